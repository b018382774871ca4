"""Query log writer producing one tab separated file per day."""

from __future__ import annotations

import csv
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import dns.rcode

from blocky.log import prefixed_log
from blocky.querylog.writer import LogEntry, Writer, answer_to_string, question_to_string

LOGGER_PREFIX = "fileQueryLogWriter"

_INVALID_FILE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]+")
_HOURS_PER_DAY = 24


def _escape(name: str) -> str:
    return _INVALID_FILE_CHARS.sub("_", name)


def _query_log_row(entry: LogEntry) -> list[str]:
    request = entry.request
    response = entry.response
    client_ip = request.client_ip
    return [
        entry.start.strftime("%Y-%m-%d %H:%M:%S"),
        str(client_ip) if client_ip is not None else "",
        "; ".join(request.client_names),
        str(entry.duration_ms),
        response.reason,
        question_to_string(request.req.question),
        answer_to_string(response.res.answer),
        dns.rcode.to_text(response.res.rcode()),
    ]


class FileWriter(Writer):
    """Appends entries to '<date>_<client>.log' files in a directory."""

    def __init__(self, target: str, per_client: bool, log_retention_days: int) -> None:
        if target and not os.path.exists(target):
            raise FileNotFoundError(
                f"query log directory '{target}' does not exist or is not writable"
            )
        self.target = target
        self.per_client = per_client
        self.log_retention_days = log_retention_days

    def write(self, entry: Optional[LogEntry]) -> None:
        date_string = entry.start.strftime("%Y-%m-%d")
        client_prefix = "-".join(entry.request.client_names) if self.per_client else "ALL"
        path = Path(self.target, f"{date_string}_{_escape(client_prefix)}.log")
        logger = prefixed_log(LOGGER_PREFIX)

        try:
            with open(path, "a", newline="", encoding="utf-8") as file:
                writer = csv.writer(file, delimiter="\t", lineterminator="\n")
                try:
                    writer.writerow(_query_log_row(entry))
                except (OSError, csv.Error) as exc:
                    logger.error("can't write to file: %s", exc, extra={"fields": {"file_name": str(path)}})
        except OSError as exc:
            logger.error("can't create/open file: %s", exc, extra={"fields": {"file_name": str(path)}})

    def clean_up(self) -> None:
        """Delete log files whose date is older than the retention period."""
        logger = prefixed_log(LOGGER_PREFIX)
        logger.debug("starting clean up")

        try:
            names = os.listdir(self.target or ".")
        except OSError as exc:
            logger.error("can't list log directory: %s", exc, extra={"fields": {"target": self.target}})
            return

        now = datetime.now(timezone.utc)
        for name in names:
            if not (name.endswith(".log") and len(name) > 10):
                continue
            try:
                day = datetime.strptime(name[:10], "%Y-%m-%d").replace(tzinfo=timezone.utc)
            except ValueError:
                continue
            age_days = int((now - day).total_seconds() / 3600 / _HOURS_PER_DAY)
            if self.log_retention_days > 0 and age_days > self.log_retention_days:
                logger.info(
                    "existing log file is older than retention time and will be deleted",
                    extra={
                        "fields": {
                            "file": name,
                            "ageInDays": age_days,
                            "logRetentionDays": self.log_retention_days,
                        }
                    },
                )
                try:
                    os.remove(os.path.join(self.target, name))
                except OSError as exc:
                    logger.error("can't remove file: %s", exc, extra={"fields": {"file": name}})