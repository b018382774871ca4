"""Query log writer storing entries in a SQL database."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Optional, Union

import dns.rcode
import dns.rdatatype
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from blocky.log import TRACE, get_logger, prefixed_log
from blocky.querylog.writer import LogEntry, Writer, answer_to_string

_metadata = MetaData()

_log_entries = Table(
    "log_entries",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("request_ts", DateTime, index=True),
    Column("client_ip", String(255)),
    Column("client_name", String(255), index=True),
    Column("duration_ms", BigInteger),
    Column("reason", Text),
    Column("response_type", String(255), index=True),
    Column("question_type", String(255)),
    Column("question_name", Text),
    Column("effective_tldp", String(255)),
    Column("answer", Text),
    Column("response_code", String(255)),
)

_SCHEMES = {"mysql": "mysql", "postgresql": "postgresql"}
_MIN_PERIOD = 0.001


def _extract_domain(name: Any) -> str:
    return name.to_text().rstrip(".").lower()


def _effective_tld_plus_one(domain: str) -> str:
    labels = [label for label in domain.split(".") if label]
    if len(labels) < 2:
        return ""
    return ".".join(labels[-2:])


def _local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _seconds(period: Union[timedelta, float, int]) -> float:
    if isinstance(period, timedelta):
        seconds = period.total_seconds()
    else:
        seconds = float(period)
    return max(seconds, _MIN_PERIOD)


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


class DatabaseWriter(Writer):
    """Buffers entries and writes them in bulk to a database periodically."""

    def __init__(
        self,
        url: str,
        log_retention_days: int,
        flush_period: Union[timedelta, float, int],
    ) -> None:
        try:
            self._engine = _create_engine(url)
            with self._engine.connect():
                pass
        except Exception as exc:  # noqa: BLE001
            raise ConnectionError(f"can't create database connection: {exc}") from exc

        try:
            _metadata.create_all(self._engine)
        except Exception as exc:  # noqa: BLE001
            self._engine.dispose()
            raise RuntimeError(f"can't perform auto migration: {exc}") from exc

        self.log_retention_days = log_retention_days
        self._period = _seconds(flush_period)
        self._pending: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._closed = False
        self._thread = threading.Thread(
            target=self._periodic_flush, name="querylog-db-flush", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> "DatabaseWriter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _periodic_flush(self) -> None:
        while not self._stop.wait(self._period):
            self.flush()

    def write(self, entry: Optional[LogEntry]) -> None:
        request = entry.request
        response = entry.response
        question = request.req.question[0]
        domain = _extract_domain(question.name)
        client_ip = request.client_ip
        row = {
            "request_ts": _local_naive(entry.start),
            "client_ip": str(client_ip) if client_ip is not None else "",
            "client_name": "; ".join(request.client_names),
            "duration_ms": entry.duration_ms,
            "reason": response.reason,
            "response_type": str(response.rtype),
            "question_type": dns.rdatatype.to_text(question.rdtype),
            "question_name": domain,
            "effective_tldp": _effective_tld_plus_one(domain),
            "answer": answer_to_string(response.res.answer),
            "response_code": dns.rcode.to_text(response.res.rcode()),
        }
        with self._lock:
            self._pending.append(row)

    def flush(self) -> None:
        """Write all pending entries to the database."""
        with self._lock:
            if not self._pending:
                return
            get_logger().log(TRACE, "%d entries to write", len(self._pending))
            try:
                with self._engine.begin() as conn:
                    conn.execute(insert(_log_entries), self._pending)
            except SQLAlchemyError as exc:
                prefixed_log("database_writer").error("can't write log entries: %s", exc)
            self._pending = []

    def clean_up(self) -> None:
        """Delete entries older than the retention period."""
        cutoff = datetime.now() - timedelta(days=self.log_retention_days)
        prefixed_log("database_writer").debug(
            "deleting log entries with request_ts < %s", cutoff
        )
        with self._engine.begin() as conn:
            conn.execute(delete(_log_entries).where(_log_entries.c.request_ts < cutoff))

    def count(self) -> int:
        """Return the number of stored entries."""
        with self._engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_log_entries)).scalar_one()

    def close(self) -> None:
        """Stop the periodic flush, write what is pending and release the database."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self._thread.join()
        self.flush()
        self._engine.dispose()


def create_database_writer(
    db_type: str,
    target: str,
    log_retention_days: int,
    flush_period: Union[timedelta, float, int],
) -> DatabaseWriter:
    """Create a writer for a 'mysql' or 'postgresql' database."""
    scheme = _SCHEMES.get(db_type)
    if scheme is None:
        raise ValueError(f"incorrect database type provided: {db_type}")
    url = target if "://" in target else f"{scheme}://{target}"
    return DatabaseWriter(url, log_retention_days, flush_period)