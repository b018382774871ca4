"""Sharing cache entries and blocking state between instances over redis."""

from __future__ import annotations

import base64
import json
import queue
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import dns.message
import redis
from redis.backoff import ExponentialBackoff
from redis.retry import Retry

from blocky.log import prefixed_log
from blocky.model import Response, ResponseType

SYNC_CHANNEL_NAME = "blocky_sync"
CACHE_STORE_PREFIX = "blocky:cache:"
CHAN_CAP = 1000
CACHE_REASON = "EXTERNAL_CACHE"
DEFAULT_CACHE_TIME = 1
MESSAGE_TYPE_CACHE = 0
MESSAGE_TYPE_ENABLE = 1

_POLL_INTERVAL = 0.1


@dataclass
class RedisConfig:
    """Connection settings; an empty address disables redis."""

    address: str = ""
    password: str = ""
    database: int = 0
    connection_attempts: int = 3
    connection_cooldown: float = 1.0


@dataclass
class EnabledMessage:
    """Blocking state change; duration in seconds, 0 meaning forever."""

    state: bool
    duration: float = 0.0
    groups: list[str] = field(default_factory=list)

    def to_json(self) -> bytes:
        data: dict[str, Any] = {"s": self.state}
        if self.duration:
            data["d"] = int(round(self.duration * 1e9))
        if self.groups:
            data["g"] = list(self.groups)
        return json.dumps(data).encode()

    @classmethod
    def from_json(cls, raw: Union[bytes, str]) -> "EnabledMessage":
        data = json.loads(raw)
        return cls(
            state=bool(data.get("s", False)),
            duration=(data.get("d") or 0) / 1e9,
            groups=list(data.get("g") or []),
        )


@dataclass
class CacheMessage:
    """A cache entry received from another instance."""

    key: str
    response: Response


def _b64(data: Optional[bytes]) -> Optional[str]:
    return None if data is None else base64.b64encode(data).decode("ascii")


def _unb64(text: Optional[str]) -> bytes:
    return b"" if not text else base64.b64decode(text)


def _text(value: Union[bytes, str]) -> str:
    return value.decode() if isinstance(value, bytes) else value


def prefix_key(key: str) -> str:
    return f"{CACHE_STORE_PREFIX}{key}"


def clean_key(key: str) -> str:
    return key[len(CACHE_STORE_PREFIX):] if key.startswith(CACHE_STORE_PREFIX) else key


def _convert_message(key: str, wire: bytes, ttl: float) -> CacheMessage:
    msg = dns.message.from_wire(wire)
    if ttl > 0:
        for rrset in msg.answer:
            rrset.ttl = int(ttl)
    return CacheMessage(
        key=key,
        response=Response(res=msg, reason=CACHE_REASON, rtype=ResponseType.CACHED),
    )


def _ttl_of(message: dns.message.Message) -> int:
    ttl = max((rrset.ttl for rrset in message.answer), default=0)
    return ttl if ttl > 0 else DEFAULT_CACHE_TIME


class RedisClient:
    """Publishes local changes and delivers changes of other instances to queues."""

    def __init__(self, config: RedisConfig, connection: Any) -> None:
        self.config = config
        self._conn = connection
        self.id = uuid.uuid4().bytes
        self._log = prefixed_log("redis")
        self._send_buffer: queue.Queue = queue.Queue(maxsize=CHAN_CAP)
        self.cache_channel: queue.Queue = queue.Queue(maxsize=CHAN_CAP)
        self.enabled_channel: queue.Queue = queue.Queue(maxsize=CHAN_CAP)
        self._stop = threading.Event()
        self._pubsub = connection.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(SYNC_CHANNEL_NAME)
        self._threads = [
            threading.Thread(target=self._listen, name="redis-listen", daemon=True),
            threading.Thread(target=self._send, name="redis-send", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def publish_cache(self, key: str, message: Optional[dns.message.Message]) -> None:
        """Queue a cache entry for asynchronous publishing and storing."""
        if key and message is not None:
            self._send_buffer.put((key, message))

    def publish_enabled(self, state: EnabledMessage) -> None:
        """Publish a blocking state change to the other instances."""
        payload = json.dumps(
            {"t": MESSAGE_TYPE_ENABLE, "m": _b64(state.to_json()), "c": _b64(self.id)}
        )
        try:
            self._conn.publish(SYNC_CHANNEL_NAME, payload)
        except redis.RedisError as exc:
            self._log.error("can't publish enabled state: %s", exc)

    def get_redis_cache(self) -> threading.Thread:
        """Load all stored cache entries into the cache queue in the background."""
        self._log.debug("GetRedisCache")
        thread = threading.Thread(target=self._load_cache, name="redis-load", daemon=True)
        thread.start()
        return thread

    def _load_cache(self) -> None:
        try:
            keys = list(self._conn.scan_iter(match=prefix_key("*")))
        except redis.RedisError as exc:
            self._log.error("GetRedisCache %s", exc)
            return
        for key in keys:
            try:
                message = self._get_response(_text(key))
            except Exception as exc:  # noqa: BLE001
                self._log.error("GetRedisCache %s", exc)
                continue
            if message is not None:
                self.cache_channel.put(message)

    def _get_response(self, key: str) -> Optional[CacheMessage]:
        value = self._conn.get(key)
        if value is None:
            return None
        ttl = self._conn.ttl(key)
        return _convert_message(clean_key(key), value, ttl if ttl and ttl > 0 else 0)

    def process_received_message(self, payload: Union[bytes, str]) -> None:
        """Handle one message from the sync channel; ignores own messages."""
        try:
            data = json.loads(payload)
            if _unb64(data.get("c")) == self.id:
                return
            kind = data.get("t")
            if kind == MESSAGE_TYPE_CACHE:
                self.cache_channel.put(
                    _convert_message(data.get("k", ""), _unb64(data.get("m")), 0)
                )
            elif kind == MESSAGE_TYPE_ENABLE:
                self.enabled_channel.put(EnabledMessage.from_json(_unb64(data.get("m"))))
            else:
                self._log.warning("Unknown message type: %s", kind)
        except Exception as exc:
            self._log.error("Processing error: %s", exc)
            raise

    def _listen(self) -> None:
        while not self._stop.is_set():
            try:
                msg = self._pubsub.get_message(timeout=_POLL_INTERVAL)
            except Exception as exc:  # noqa: BLE001
                self._log.error("receive error: %s", exc)
                self._stop.wait(_POLL_INTERVAL)
                continue
            if not msg or msg.get("type") != "message" or not msg.get("data"):
                continue
            self._log.debug("Received message: %s", msg)
            try:
                self.process_received_message(msg["data"])
            except Exception:  # noqa: BLE001
                pass

    def _send(self) -> None:
        while not self._stop.is_set():
            try:
                key, message = self._send_buffer.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._publish_from_buffer(key, message)
            except Exception as exc:  # noqa: BLE001
                self._log.error("can't publish cache entry: %s", exc)

    def _publish_from_buffer(self, key: str, message: dns.message.Message) -> None:
        wire = message.to_wire()
        payload = json.dumps(
            {"k": key, "t": MESSAGE_TYPE_CACHE, "m": _b64(wire), "c": _b64(self.id)}
        )
        self._conn.publish(SYNC_CHANNEL_NAME, payload)
        self._conn.set(prefix_key(key), wire, ex=_ttl_of(message))

    def close(self) -> None:
        """Stop the background threads and release the connection."""
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._pubsub.close()
        self._conn.close()


def create_client(config: Optional[RedisConfig]) -> Optional[RedisClient]:
    """Connect to redis; returns None when no address is configured."""
    if config is None or not config.address:
        return None
    host, _, port = config.address.rpartition(":")
    password = config.password or None
    connection = redis.Redis(
        host=host or "localhost",
        port=int(port) if port else 6379,
        password=password,
        db=config.database,
        retry=Retry(
            ExponentialBackoff(cap=max(config.connection_cooldown, 0.0)),
            config.connection_attempts,
        ),
    )
    try:
        connection.ping()
    except Exception:
        connection.close()
        raise
    return RedisClient(config, connection)