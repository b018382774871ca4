"""Query log entries, the writer interface and the simple writers."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Union

import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from blocky.log import prefixed_log
from blocky.model import Request, Response

LOGGER_PREFIX = "queryLog"

_ADDRESS_TYPES = (dns.rdatatype.A, dns.rdatatype.AAAA)
_TARGET_TYPES = (dns.rdatatype.CNAME, dns.rdatatype.PTR)


@dataclass
class LogEntry:
    """One resolved query to be written to the query log."""

    request: Request
    response: Response
    start: datetime
    duration_ms: int


class Writer(abc.ABC):
    """Destination for query log entries."""

    @abc.abstractmethod
    def write(self, entry: Optional[LogEntry]) -> None:
        """Record one entry."""

    @abc.abstractmethod
    def clean_up(self) -> None:
        """Remove entries older than the retention period."""


def question_to_string(questions: Iterable[dns.rrset.RRset]) -> str:
    """Render the question section as 'TYPE (name)' items."""
    return ", ".join(
        f"{dns.rdatatype.to_text(q.rdtype)} ({q.name.to_text()})" for q in questions
    )


def _record_text(rrset: dns.rrset.RRset, rdata: Any) -> str:
    rtype = dns.rdatatype.to_text(rrset.rdtype)
    if rrset.rdtype in _ADDRESS_TYPES:
        return f"{rtype} ({rdata.address})"
    if rrset.rdtype in _TARGET_TYPES:
        return f"{rtype} ({rdata.target.to_text()})"
    return "\t".join(
        (
            rrset.name.to_text(),
            str(rrset.ttl),
            dns.rdataclass.to_text(rrset.rdclass),
            rtype,
            rdata.to_text(),
        )
    )


def answer_to_string(answer: Iterable[dns.rrset.RRset]) -> str:
    """Render the answer section as a comma separated list of records."""
    return ", ".join(_record_text(rrset, rdata) for rrset in answer for rdata in rrset)


class NoneWriter(Writer):
    """Writer that discards everything."""

    def write(self, entry: Optional[LogEntry]) -> None:
        return None

    def clean_up(self) -> None:
        return None


class LoggerWriter(Writer):
    """Writes each entry as a log record."""

    def __init__(
        self, logger: Union[logging.Logger, logging.LoggerAdapter, None] = None
    ) -> None:
        self.logger = logger if logger is not None else prefixed_log(LOGGER_PREFIX)

    def write(self, entry: Optional[LogEntry]) -> None:
        request = entry.request
        response = entry.response
        client_ip = request.client_ip
        fields = {
            "client_ip": str(client_ip) if client_ip is not None else "",
            "client_names": "; ".join(request.client_names),
            "response_reason": response.reason,
            "question": question_to_string(request.req.question),
            "response_code": dns.rcode.to_text(response.res.rcode()),
            "answer": answer_to_string(response.res.answer),
            "duration_ms": entry.duration_ms,
        }
        self.logger.info("query resolved", extra={"fields": fields})

    def clean_up(self) -> None:
        return None