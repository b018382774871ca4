"""Resolver caching answers for their TTL, with optional prefetching."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset

from blocky.log import prefixed_log
from blocky.model import Request, Response, ResponseType

_LOG_PREFIX = "caching_resolver"


@dataclass
class CachingConfig:
    """Cache settings; all durations in seconds."""

    min_caching_time: float = 0.0
    max_caching_time: float = 0.0
    cache_time_negative: float = 1800.0
    max_items_count: int = 0
    prefetching: bool = False
    prefetch_expires: float = 7200.0
    prefetch_threshold: int = 5
    prefetch_max_items_count: int = 0
    cleanup_interval: float = 5.0


@dataclass
class _CacheValue:
    answer: list
    prefetch: bool


class _ExpiringCache:
    """Size limited cache whose entries expire; expired entries can be refreshed."""

    def __init__(
        self,
        cleanup_interval: float,
        max_size: int = 0,
        on_expired: Optional[Callable[[str], tuple[Any, float]]] = None,
    ) -> None:
        self._items: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self._max_size = max_size
        self._on_expired = on_expired
        self._interval = cleanup_interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="cache-cleanup", daemon=True)
        self._thread.start()

    def put(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._items[key] = (value, time.monotonic() + ttl)
            self._items.move_to_end(key)
            while self._max_size > 0 and len(self._items) > self._max_size:
                self._items.popitem(last=False)

    def get(self, key: str) -> tuple[Any, float]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None, 0.0
            self._items.move_to_end(key)
            return item[0], max(0.0, item[1] - time.monotonic())

    def total_count(self) -> int:
        with self._lock:
            return len(self._items)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._cleanup()

    def _cleanup(self) -> None:
        now = time.monotonic()
        with self._lock:
            expired = [key for key, (_, end) in self._items.items() if end <= now]
        for key in expired:
            value, ttl = None, 0.0
            if self._on_expired is not None:
                try:
                    value, ttl = self._on_expired(key)
                except Exception as exc:  # noqa: BLE001
                    prefixed_log(_LOG_PREFIX).error("refresh of '%s' failed: %s", key, exc)
            if value is not None:
                self.put(key, value, ttl)
                continue
            with self._lock:
                item = self._items.get(key)
                if item is not None and item[1] <= now:
                    del self._items[key]

    def close(self) -> None:
        self._stop.set()
        self._thread.join()


def _extract_domain(name: dns.name.Name) -> str:
    return name.to_text().rstrip(".").lower()


def _cache_key(rdtype: int, domain: str) -> str:
    return f"{dns.rdatatype.to_text(rdtype)}:{domain}"


def _split_cache_key(key: str) -> tuple[int, str]:
    rtype, _, domain = key.partition(":")
    return dns.rdatatype.from_text(rtype), domain


def _with_ttl(rrset: dns.rrset.RRset, ttl: int) -> dns.rrset.RRset:
    copy = rrset.copy()
    copy.ttl = ttl
    return copy


def _format_duration(seconds: float) -> str:
    units = (("week", 604800), ("day", 86400), ("hour", 3600), ("minute", 60), ("second", 1))
    remaining = int(abs(seconds))
    parts = []
    for name, size in units:
        amount, remaining = divmod(remaining, size)
        if amount:
            parts.append(f"{amount} {name}{'s' if amount != 1 else ''}")
    if not parts:
        return "0 seconds"
    text = " ".join(parts)
    return f"-{text}" if seconds < 0 else text


class CachingResolver:
    """Answers recurring queries from cache and delegates the rest."""

    def __init__(self, config: CachingConfig, next_resolver: Any = None, redis_client: Any = None) -> None:
        self.next = next_resolver
        self._min_cache_time_sec = int(config.min_caching_time)
        self._max_cache_time_sec = int(config.max_caching_time)
        self._cache_time_negative = config.cache_time_negative
        self._redis = redis_client
        self._prefetch_expires = 0.0
        self._prefetch_threshold = 0
        self._prefetching_name_cache: Optional[_ExpiringCache] = None
        if config.prefetching:
            self._prefetch_expires = config.prefetch_expires
            self._prefetch_threshold = config.prefetch_threshold
            self._prefetching_name_cache = _ExpiringCache(60.0, config.prefetch_max_items_count)
            self._result_cache = _ExpiringCache(
                config.cleanup_interval, config.max_items_count, self._on_expired
            )
        else:
            self._result_cache = _ExpiringCache(config.cleanup_interval, config.max_items_count)

        self._stop = threading.Event()
        self._subscriber: Optional[threading.Thread] = None
        if redis_client is not None:
            self._subscriber = threading.Thread(
                target=self._receive_from_redis, name="cache-redis", daemon=True
            )
            self._subscriber.start()
            redis_client.get_redis_cache()

    def _receive_from_redis(self) -> None:
        logger = prefixed_log(_LOG_PREFIX)
        while not self._stop.is_set():
            try:
                message = self._redis.cache_channel.get(timeout=0.1)
            except Exception:  # noqa: BLE001
                continue
            if message is not None:
                logger.debug("Received key from redis: %s", message.key)
                self._put_in_cache(message.key, message.response, False, False)

    def _is_prefetching_domain(self, key: str) -> bool:
        count, _ = self._prefetching_name_cache.get(key)
        return count is not None and count > self._prefetch_threshold

    def _on_expired(self, key: str) -> tuple[Any, float]:
        rdtype, domain = _split_cache_key(key)
        logger = prefixed_log(_LOG_PREFIX)
        if self._is_prefetching_domain(key):
            logger.debug("prefetching '%s' (%s)", domain, dns.rdatatype.to_text(rdtype))
            request = Request(req=dns.message.make_query(f"{domain}.", rdtype), log=logger)
            try:
                response = self.next.resolve(request)
            except Exception as exc:  # noqa: BLE001
                logger.error("can't prefetch '%s': %s", domain, exc)
                return None, 0.0
            if response.res.rcode() == dns.rcode.NOERROR:
                answer = response.res.answer
                return _CacheValue(answer, True), self._adjust_ttls(answer)
        return None, 0.0

    def configuration(self) -> list[str]:
        """Describe the current settings, one line each."""
        if self._max_cache_time_sec < 0:
            return ["deactivated"]
        result = [
            f"minCacheTimeInSec = {self._min_cache_time_sec}",
            f"maxCacheTimeSec = {self._max_cache_time_sec}",
            f"cacheTimeNegative = {_format_duration(self._cache_time_negative)}",
            f"prefetching = {'true' if self._prefetching_name_cache else 'false'}",
        ]
        if self._prefetching_name_cache is not None:
            result.append(f"prefetchExpires = {_format_duration(self._prefetch_expires)}")
            result.append(f"prefetchThreshold = {self._prefetch_threshold}")
        result.append(f"cache items count = {self._result_cache.total_count()}")
        return result

    def resolve(self, request: Request) -> Response:
        """Answer from cache or delegate to the next resolver and cache its answer."""
        logger = request.log or prefixed_log(_LOG_PREFIX)
        if self._max_cache_time_sec < 0:
            logger.debug("skip cache")
            return self.next.resolve(request)

        response: Optional[Response] = None
        for question in request.req.question:
            domain = _extract_domain(question.name)
            key = _cache_key(question.rdtype, domain)
            self._track_query_count(domain, key, logger)

            value, ttl = self._result_cache.get(key)
            if value is not None:
                logger.debug("domain is cached")
                reply = dns.message.make_response(request.req)
                if isinstance(value, _CacheValue):
                    reply.answer = [_with_ttl(rrset, int(ttl)) for rrset in value.answer]
                    return Response(res=reply, rtype=ResponseType.CACHED, reason="CACHED")
                reply.set_rcode(value)
                return Response(res=reply, rtype=ResponseType.CACHED, reason="CACHED NEGATIVE")

            logger.debug("not in cache: go to next resolver %s", type(self.next).__name__)
            response = self.next.resolve(request)
            self._put_in_cache(key, response, False, self._redis is not None)
        return response

    def _track_query_count(self, domain: str, key: str, logger: Any) -> None:
        if self._prefetching_name_cache is None:
            return
        count, _ = self._prefetching_name_cache.get(key)
        count = (count or 0) + 1
        self._prefetching_name_cache.put(key, count, self._prefetch_expires)
        logger.debug(
            "domain '%s' was requested %d times, total cache size: %d",
            domain,
            count,
            self._prefetching_name_cache.total_count(),
        )

    def _put_in_cache(self, key: str, response: Response, prefetch: bool, publish: bool) -> None:
        answer = response.res.answer
        rcode = response.res.rcode()
        if rcode == dns.rcode.NOERROR:
            self._result_cache.put(key, _CacheValue(answer, prefetch), self._adjust_ttls(answer))
        elif rcode == dns.rcode.NXDOMAIN and self._cache_time_negative > 0:
            self._result_cache.put(key, rcode, self._cache_time_negative)
        if publish and self._redis is not None:
            self._redis.publish_cache(key, response.res)

    def _adjust_ttls(self, answer: list) -> float:
        """Clamp answer TTLs to min/max cache time and return the largest, in seconds."""
        if not answer:
            return self._cache_time_negative
        largest = 0
        for rrset in answer:
            if self._min_cache_time_sec > 0 and rrset.ttl < self._min_cache_time_sec:
                rrset.ttl = self._min_cache_time_sec
            if self._max_cache_time_sec > 0 and rrset.ttl > self._max_cache_time_sec:
                rrset.ttl = self._max_cache_time_sec
            largest = max(largest, rrset.ttl)
        return float(largest)

    def close(self) -> None:
        """Stop background work."""
        self._stop.set()
        if self._subscriber is not None:
            self._subscriber.join()
        self._result_cache.close()
        if self._prefetching_name_cache is not None:
            self._prefetching_name_cache.close()