"""Request and response types passed along the resolver chain."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from ipaddress import IPv4Address, IPv6Address
from typing import TYPE_CHECKING, Any, Optional, Union

if TYPE_CHECKING:
    import dns.message


class ResponseType(enum.IntEnum):
    """How a response was produced."""

    RESOLVED = 0  # resolved by the external upstream resolver
    CACHED = 1  # resolved from cache
    BLOCKED = 2  # the query was blocked
    CONDITIONAL = 3  # resolved by the conditional upstream resolver
    CUSTOMDNS = 4  # resolved by a custom rule
    HOSTSFILE = 5  # resolved by looking up the hosts file
    FILTERED = 6  # filtered by query type
    NOTFQDN = 7  # filtered as it is not fqdn conform
    SPECIAL = 8  # resolved by the special use domain name resolver

    def __str__(self) -> str:
        return self.name


class RequestProtocol(enum.IntEnum):
    """Server protocol the request arrived on."""

    TCP = 0
    UDP = 1

    def __str__(self) -> str:
        return self.name


def _parse(enum_cls: type[enum.Enum], name: str) -> Any:
    try:
        return enum_cls[name]
    except KeyError:
        choices = ", ".join(member.name for member in enum_cls)
        raise ValueError(
            f"{name} is not a valid {enum_cls.__name__}, try [{choices}]"
        ) from None


def parse_response_type(name: str) -> ResponseType:
    """Return the ResponseType with the given name, e.g. 'CACHED'."""
    return _parse(ResponseType, name)


def parse_request_protocol(name: str) -> RequestProtocol:
    """Return the RequestProtocol with the given name, 'TCP' or 'UDP'."""
    return _parse(RequestProtocol, name)


@dataclass
class Response:
    """The response to a DNS query."""

    res: Optional["dns.message.Message"] = None
    reason: str = ""
    rtype: ResponseType = ResponseType.RESOLVED


@dataclass
class Request:
    """A client's DNS request."""

    client_ip: Optional[Union[IPv4Address, IPv6Address]] = None
    request_client_id: str = ""
    protocol: RequestProtocol = RequestProtocol.TCP
    client_names: list[str] = field(default_factory=list)
    req: Optional["dns.message.Message"] = None
    log: Any = None
    request_ts: Optional[datetime] = None