"""Resolver that blocks queries against black and white lists per client group."""

from __future__ import annotations

import fnmatch
import ipaddress
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Union

import dns.message
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from blocky.log import escape_input, get_logger, prefixed_log
from blocky.model import Request, Response, ResponseType
from blocky.redis_sync import EnabledMessage

_LOG_PREFIX = "blocking_resolver"
_DEFAULT_GROUP = "default"
_POLL_INTERVAL = 0.1

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class BlockingConfig:
    """Blocking settings; durations in seconds, list values are list sources."""

    black_lists: dict[str, list[str]] = field(default_factory=dict)
    white_lists: dict[str, list[str]] = field(default_factory=dict)
    client_groups_block: dict[str, list[str]] = field(default_factory=dict)
    block_type: str = "ZEROIP"
    block_ttl: float = 21600.0
    download_timeout: float = 60.0
    fail_start_on_list_error: bool = False


@dataclass
class BlockingStatus:
    """Current blocking state."""

    enabled: bool
    disabled_groups: list[str]
    auto_enable_in_sec: int


def _normalize_entry(entry: str) -> str:
    text = entry.strip().lower()
    try:
        return ipaddress.ip_address(text).compressed
    except ValueError:
        return text


class Matcher:
    """Domain and IP entries per group; optionally reloaded from a loader."""

    def __init__(
        self,
        groups: Optional[Mapping[str, Iterable[str]]] = None,
        loader: Optional[Callable[[], Mapping[str, Iterable[str]]]] = None,
    ) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._groups: dict[str, set[str]] = {}
        if groups is not None:
            self._replace(groups)
        elif loader is not None:
            self._replace(loader())

    def _replace(self, groups: Mapping[str, Iterable[str]]) -> None:
        entries = {
            group: {_normalize_entry(entry) for entry in items if entry.strip()}
            for group, items in groups.items()
        }
        with self._lock:
            self._groups = entries

    def refresh(self) -> None:
        """Reload all groups from the loader, if one was given."""
        if self._loader is not None:
            self._replace(self._loader())

    def match(self, domain: str, groups_to_check: Iterable[str]) -> tuple[bool, str]:
        """Return (True, group) for the first group containing the entry."""
        entry = _normalize_entry(domain)
        with self._lock:
            for group in groups_to_check:
                if entry in self._groups.get(group, ()):
                    return True, group
        return False, ""

    def configuration(self) -> list[str]:
        """Describe the groups and their sizes."""
        with self._lock:
            return [
                f"{group}: {len(entries)} entries"
                for group, entries in sorted(self._groups.items())
            ]


def _as_v4(ip: IPAddress) -> Optional[ipaddress.IPv4Address]:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    return ip.ipv4_mapped


class _NxDomainBlockHandler:
    def handle_block(self, question: Any, response: dns.message.Message) -> None:
        response.set_rcode(dns.rcode.NXDOMAIN)


class _ZeroIPBlockHandler:
    def __init__(self, ttl: int) -> None:
        self.ttl = ttl

    def handle_block(self, question: Any, response: dns.message.Message) -> None:
        if question.rdtype == dns.rdatatype.AAAA:
            zero_ip = "::"
        elif question.rdtype == dns.rdatatype.A:
            zero_ip = "0.0.0.0"
        else:
            response.set_rcode(dns.rcode.NXDOMAIN)
            return
        response.answer.append(
            dns.rrset.from_text(question.name, self.ttl, dns.rdataclass.IN, question.rdtype, zero_ip)
        )


class _IPBlockHandler:
    def __init__(self, destinations: list[IPAddress], ttl: int) -> None:
        self.destinations = destinations
        self.ttl = ttl
        self.fallback = _ZeroIPBlockHandler(ttl)

    def handle_block(self, question: Any, response: dns.message.Message) -> None:
        addresses = []
        for ip in self.destinations:
            v4 = _as_v4(ip)
            if question.rdtype == dns.rdatatype.AAAA and v4 is None:
                addresses.append(ip.compressed)
            elif question.rdtype == dns.rdatatype.A and v4 is not None:
                addresses.append(str(v4))
        if addresses:
            response.answer.append(
                dns.rrset.from_text(
                    question.name, self.ttl, dns.rdataclass.IN, question.rdtype, *addresses
                )
            )
        if not response.answer:
            self.fallback.handle_block(question, response)


def create_block_handler(config: BlockingConfig) -> Any:
    """Return the handler answering blocked queries for the configured block type."""
    block_type = config.block_type
    if block_type.casefold() == "nxdomain":
        return _NxDomainBlockHandler()

    ttl = int(config.block_ttl)
    if block_type.casefold() == "zeroip":
        return _ZeroIPBlockHandler(ttl)

    ips: list[IPAddress] = []
    for part in block_type.split(","):
        try:
            ips.append(ipaddress.ip_address(part.strip()))
        except ValueError:
            continue
    if ips:
        return _IPBlockHandler(ips, ttl)

    raise ValueError(
        f"unknown blockType '{block_type}', please use one of: ZeroIP, NxDomain "
        "or specify destination IP address(es)"
    )


def _go_duration(seconds: float) -> str:
    if seconds == 0:
        return "0s"
    sign = "-" if seconds < 0 else ""
    total = abs(seconds)
    if total < 1:
        return f"{sign}{total * 1000:g}ms"
    hours = int(total // 3600)
    minutes = int(total % 3600 // 60)
    secs = f"{total - hours * 3600 - minutes * 60:g}"
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


def _is_fqdn(identifier: str) -> bool:
    return "." in identifier.strip(".")


def _client_name_matches(pattern: str, name: str) -> bool:
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatchcase(name.lower(), pattern.lower())
    return pattern.lower() == name.lower()


def _cidr_contains(identifier: str, ip: IPAddress) -> bool:
    if "/" not in identifier:
        return False
    try:
        network = ipaddress.ip_network(identifier, strict=False)
    except ValueError:
        return False
    return network.version == ip.version and ip in network


def _entry_to_check(rdtype: int, rdata: Any) -> tuple[str, str]:
    if rdtype == dns.rdatatype.A:
        return rdata.address, "IP"
    if rdtype == dns.rdatatype.AAAA:
        return rdata.address.lower(), "IP"
    if rdtype == dns.rdatatype.CNAME:
        return rdata.target.to_text().rstrip(".").lower(), "CNAME"
    return "", ""


class BlockingResolver:
    """Checks the queried domain and the answer against black and white lists."""

    def __init__(
        self,
        config: BlockingConfig,
        blacklist_matcher: Optional[Matcher] = None,
        whitelist_matcher: Optional[Matcher] = None,
        next_resolver: Any = None,
        redis_client: Any = None,
    ) -> None:
        self._block_handler = create_block_handler(config)
        self.config = config
        self.next = next_resolver
        self._blacklist = blacklist_matcher if blacklist_matcher is not None else Matcher()
        self._whitelist = whitelist_matcher if whitelist_matcher is not None else Matcher()
        self._whitelist_only_groups = {
            group
            for group, links in config.white_lists.items()
            if links and group not in config.black_lists
        }

        client_groups: dict[str, list[str]] = {}
        for identifier, groups in config.client_groups_block.items():
            for part in identifier.split(","):
                client_groups.setdefault(part, []).extend(groups)
        self._client_groups_block = client_groups

        self._lock = threading.RLock()
        self._enabled = True
        self._disabled_groups: list[str] = []
        self._timer: Optional[threading.Timer] = None
        self._disable_end = 0.0
        self._fqdn_ips: Optional[dict[str, tuple[list[IPAddress], float]]] = None

        self._redis = redis_client
        if redis_client is not None:
            threading.Thread(
                target=self._receive_enabled_state, name="blocking-redis", daemon=True
            ).start()

        if next_resolver is not None:
            self._init_fqdn_ip_cache()

    def _receive_enabled_state(self) -> None:
        logger = prefixed_log(_LOG_PREFIX)
        while True:
            try:
                message = self._redis.enabled_channel.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if message is None:
                continue
            logger.debug("Received state from redis: %s", message)
            if message.state:
                self._internal_enable_blocking()
            else:
                try:
                    self._internal_disable_blocking(message.duration, message.groups)
                except ValueError as exc:
                    logger.warning("Blocking couldn't be disabled: %s", exc)

    def refresh_lists(self) -> None:
        """Reload the black and white lists."""
        self._blacklist.refresh()
        self._whitelist.refresh()

    def _all_blocking_groups(self) -> list[str]:
        return sorted({*self.config.black_lists, _DEFAULT_GROUP})

    def enable_blocking(self) -> None:
        """Enable blocking for all groups."""
        self._internal_enable_blocking()
        if self._redis is not None:
            self._redis.publish_enabled(EnabledMessage(state=True))

    def _internal_enable_blocking(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._enabled = True
            self._disabled_groups = []

    def disable_blocking(self, duration: float = 0.0, groups: Optional[list[str]] = None) -> None:
        """Disable blocking for some or all groups, for a time in seconds or forever if 0."""
        self._internal_disable_blocking(duration, groups)
        if self._redis is not None:
            self._redis.publish_enabled(
                EnabledMessage(state=False, duration=duration, groups=list(groups or []))
            )

    def _internal_disable_blocking(self, duration: float, groups: Optional[list[str]]) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            all_groups = self._all_blocking_groups()
            if not groups:
                disabled = all_groups
            else:
                for group in groups:
                    if group not in all_groups:
                        raise ValueError(f"group '{group}' is unknown")
                disabled = list(groups)
            self._disabled_groups = disabled
            self._enabled = False
            self._disable_end = time.monotonic() + duration

            joined = escape_input("; ".join(disabled))
            if duration == 0:
                get_logger().info("disable blocking for group(s) '%s'", joined)
            else:
                get_logger().info(
                    "disable blocking for %s for group(s) '%s'", _go_duration(duration), joined
                )
                self._timer = threading.Timer(duration, self._auto_enable)
                self._timer.daemon = True
                self._timer.start()

    def _auto_enable(self) -> None:
        self.enable_blocking()
        get_logger().info("blocking enabled again")

    def blocking_status(self) -> BlockingStatus:
        """Return whether blocking is enabled, which groups are off and for how long."""
        with self._lock:
            remaining = 0.0
            if not self._enabled:
                remaining = max(0.0, self._disable_end - time.monotonic())
            return BlockingStatus(
                enabled=self._enabled,
                disabled_groups=list(self._disabled_groups),
                auto_enable_in_sec=int(remaining),
            )

    def configuration(self) -> list[str]:
        """Describe the current settings, one line each."""
        cfg = self.config
        if not cfg.client_groups_block:
            return ["deactivated"]
        result = ["clientGroupsBlock"]
        result.extend(
            f'  {key} = "{";".join(groups)}"' for key, groups in cfg.client_groups_block.items()
        )
        result.append(f'blockType = "{cfg.block_type}"')
        if cfg.block_type != "NXDOMAIN":
            result.append(f"blockTTL = {_go_duration(cfg.block_ttl)}")
        result.append(f"downloadTimeout = {_go_duration(cfg.download_timeout)}")
        result.append(
            f"FailStartOnListError = {'true' if cfg.fail_start_on_list_error else 'false'}"
        )
        result.append("blacklist:")
        result.extend(f"  {line}" for line in self._blacklist.configuration())
        result.append("whitelist:")
        result.extend(f"  {line}" for line in self._whitelist.configuration())
        return result

    def _handle_blocked(self, logger: Any, request: Request, question: Any, reason: str) -> Response:
        reply = dns.message.make_response(request.req)
        self._block_handler.handle_block(question, reply)
        logger.debug("blocking request '%s'", reason)
        return Response(res=reply, rtype=ResponseType.BLOCKED, reason=reason)

    def _handle_blacklist(
        self, groups: list[str], request: Request, logger: Any
    ) -> Optional[Response]:
        logger.debug("checking groups for request: %s", "; ".join(groups))
        whitelist_only = any(group in self._whitelist_only_groups for group in groups)

        for question in request.req.question:
            domain = question.name.to_text().rstrip(".").lower()
            whitelisted, group = self._whitelist.match(domain, groups)
            if whitelisted:
                logger.debug("domain '%s' is whitelisted in group '%s'", domain, group)
                return self.next.resolve(request)
            if whitelist_only:
                return self._handle_blocked(logger, request, question, "BLOCKED (WHITELIST ONLY)")
            blocked, group = self._blacklist.match(domain, groups)
            if blocked:
                return self._handle_blocked(logger, request, question, f"BLOCKED ({group})")
        return None

    def resolve(self, request: Request) -> Response:
        """Block the query if listed, else delegate and check the answer."""
        logger = request.log or prefixed_log(_LOG_PREFIX)
        groups = self._groups_to_check(request)

        if groups:
            handled = self._handle_blacklist(groups, request, logger)
            if handled is not None:
                return handled

        response = self.next.resolve(request)

        if groups and response.res is not None:
            for rrset in response.res.answer:
                for rdata in rrset:
                    entry, kind = _entry_to_check(rrset.rdtype, rdata)
                    if not entry:
                        continue
                    whitelisted, group = self._whitelist.match(entry, groups)
                    if whitelisted:
                        logger.debug("%s '%s' is whitelisted in group '%s'", kind, entry, group)
                        continue
                    blocked, group = self._blacklist.match(entry, groups)
                    if blocked:
                        return self._handle_blocked(
                            logger, request, request.req.question[0], f"BLOCKED {kind} ({group})"
                        )
        return response

    def _groups_to_check(self, request: Request) -> list[str]:
        with self._lock:
            groups: list[str] = []
            for name in request.client_names:
                for block_group, by_name in self._client_groups_block.items():
                    if _client_name_matches(block_group, name):
                        groups.extend(by_name)

            ip = request.client_ip
            if ip is not None:
                groups.extend(self._client_groups_block.get(str(ip), []))
                for identifier, by_address in self._client_groups_block.items():
                    if _cidr_contains(identifier, ip):
                        groups.extend(by_address)
                    elif _is_fqdn(identifier) and self._fqdn_ips is not None:
                        for cached in self._fqdn_lookup(identifier):
                            if cached == ip:
                                groups.extend(by_address)

            if not groups:
                groups = list(self._client_groups_block.get(_DEFAULT_GROUP, []))

            return sorted(group for group in groups if group not in self._disabled_groups)

    def _query_identifier_ips(self, identifier: str) -> tuple[list[IPAddress], float]:
        logger = prefixed_log("FQDNClientIdentifierCache")
        result: list[IPAddress] = []
        ttl = 0.0
        for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            try:
                request = Request(req=dns.message.make_query(identifier, rdtype), log=logger)
                response = self.next.resolve(request)
            except Exception as exc:  # noqa: BLE001
                logger.debug("can't resolve fq identifier '%s': %s", identifier, exc)
                continue
            if response.res is None or response.res.rcode() != dns.rcode.NOERROR:
                continue
            for rrset in response.res.answer:
                if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
                    continue
                ttl = float(rrset.ttl)
                result.extend(ipaddress.ip_address(rdata.address) for rdata in rrset)
            logger.debug("resolved IPs '%s' for fq identifier '%s'", result, identifier)
        return result, ttl

    def _init_fqdn_ip_cache(self) -> None:
        with self._lock:
            cache: dict[str, tuple[list[IPAddress], float]] = {}
            for identifier in list(self._client_groups_block):
                if _is_fqdn(identifier):
                    ips, ttl = self._query_identifier_ips(identifier)
                    if ips:
                        cache[identifier] = (ips, time.monotonic() + ttl)
            self._fqdn_ips = cache

    def _fqdn_lookup(self, identifier: str) -> list[IPAddress]:
        entry = self._fqdn_ips.get(identifier)
        if entry is None:
            return []
        ips, expires = entry
        if expires <= time.monotonic():
            ips, ttl = self._query_identifier_ips(identifier)
            if ips:
                self._fqdn_ips[identifier] = (ips, time.monotonic() + ttl)
            else:
                del self._fqdn_ips[identifier]
        return ips