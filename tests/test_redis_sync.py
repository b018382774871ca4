import base64
import fnmatch
import json
import queue
import threading
import time

import dns.message
import dns.rdatatype
import dns.rrset
import pytest
import redis

from blocky.model import ResponseType
from blocky.redis_sync import (
    CACHE_STORE_PREFIX,
    SYNC_CHANNEL_NAME,
    EnabledMessage,
    RedisClient,
    RedisConfig,
    create_client,
)


class FakePubSub:
    def __init__(self, server):
        self.server = server
        self.messages = queue.Queue()
        self.channels = set()

    def subscribe(self, *channels):
        self.channels.update(channels)
        self.server.subscribers.append(self)

    def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        try:
            return self.messages.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        if self in self.server.subscribers:
            self.server.subscribers.remove(self)


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.subscribers = []
        self.published = []
        self.lock = threading.Lock()

    def pubsub(self, **kwargs):
        return FakePubSub(self)

    def publish(self, channel, data):
        data = data.encode() if isinstance(data, str) else data
        with self.lock:
            self.published.append((channel, data))
        receivers = [s for s in self.subscribers if channel in s.channels]
        for sub in receivers:
            sub.messages.put({"type": "message", "channel": channel, "data": data})
        return len(receivers)

    def set(self, name, value, ex=None):
        with self.lock:
            self.store[name] = (value, time.monotonic() + ex if ex else None)

    def get(self, name):
        item = self.store.get(name)
        return None if item is None else item[0]

    def ttl(self, name):
        item = self.store.get(name)
        if item is None:
            return -2
        if item[1] is None:
            return -1
        return int(item[1] - time.monotonic() + 0.999)

    def scan_iter(self, match=None):
        return [k for k in list(self.store) if match is None or fnmatch.fnmatch(k, match)]

    def close(self):
        pass


def wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def make_answer(name, ttl, rdtype, value):
    query = dns.message.make_query(name, rdtype)
    response = dns.message.make_response(query)
    response.answer.append(dns.rrset.from_text(name, ttl, "IN", rdtype, value))
    return response


@pytest.fixture
def server():
    return FakeRedis()


@pytest.fixture
def client(server):
    c = RedisClient(RedisConfig(address="localhost:6379"), server)
    yield c
    c.close()


def foreign_payload(kind, message, key=None):
    data = {
        "t": kind,
        "m": base64.b64encode(message).decode(),
        "c": base64.b64encode(b"another-instance").decode(),
    }
    if key is not None:
        data["k"] = key
    return json.dumps(data).encode()


def test_no_config_gives_no_client():
    assert create_client(None) is None


def test_no_address_gives_no_client():
    assert create_client(RedisConfig()) is None


def test_invalid_address_fails():
    cfg = RedisConfig(address="127.0.0.1:0", connection_attempts=0, connection_cooldown=0.01)
    with pytest.raises(redis.exceptions.RedisError):
        create_client(cfg)


def test_publish_cache_stores_key(client, server):
    client.publish_cache("example.com", make_answer("example.com.", 123, "A", "123.124.122.123"))
    assert wait_for(lambda: len(server.store) == 1)
    assert list(server.store) == [CACHE_STORE_PREFIX + "example.com"]
    assert 0 < server.ttl(CACHE_STORE_PREFIX + "example.com") <= 123
    client.get_redis_cache().join(2)
    message = client.cache_channel.get(timeout=2)
    assert message.key == "example.com"
    assert message.response.res.answer[0][0].address == "123.124.122.123"


def test_publish_cache_ignores_empty_key(client, server):
    client.publish_cache("", make_answer("example.com.", 123, "A", "1.1.1.1"))
    time.sleep(0.3)
    assert server.store == {}
    client.get_redis_cache().join(2)
    assert client.cache_channel.qsize() == 0


def test_publish_enabled(client, server):
    client.publish_enabled(EnabledMessage(state=True))
    channel, data = server.published[-1]
    assert channel == SYNC_CHANNEL_NAME
    payload = json.loads(data)
    assert payload["t"] == 1
    assert EnabledMessage.from_json(base64.b64decode(payload["m"])).state is True


def test_own_messages_are_ignored(client):
    client.publish_enabled(EnabledMessage(state=False))
    time.sleep(0.3)
    assert client.enabled_channel.qsize() == 0


def test_received_enabled(client, server):
    receivers = server.publish(
        SYNC_CHANNEL_NAME, foreign_payload(1, EnabledMessage(state=True).to_json())
    )
    assert receivers == 1
    message = client.enabled_channel.get(timeout=2)
    assert message.state is True


def test_received_cache(client, server):
    wire = make_answer("example.com.", 300, "A", "1.2.3.4").to_wire()
    server.publish(SYNC_CHANNEL_NAME, foreign_payload(0, wire, key="A:example.com"))
    message = client.cache_channel.get(timeout=2)
    assert message.key == "A:example.com"
    assert message.response.rtype == ResponseType.CACHED
    assert message.response.reason == "EXTERNAL_CACHE"
    assert message.response.res.answer[0][0].address == "1.2.3.4"


def test_unknown_type_changes_nothing(client):
    client.process_received_message(foreign_payload(99, b"test", key="unknown"))
    assert client.enabled_channel.qsize() == 0
    assert client.cache_channel.qsize() == 0


def test_invalid_payload_raises(client):
    with pytest.raises(ValueError):
        client.process_received_message(b"not json")


def test_get_redis_cache(client, server):
    client.publish_cache("example.com", make_answer("example.com.", 123, "A", "123.124.122.123"))
    assert wait_for(lambda: len(server.store) == 1)
    client.get_redis_cache().join(2)
    message = client.cache_channel.get(timeout=2)
    assert message.key == "example.com"
    assert 0 < message.response.res.answer[0].ttl <= 123


def test_enabled_message_round_trip():
    original = EnabledMessage(state=False, duration=1.5, groups=["gr1", "gr2"])
    assert EnabledMessage.from_json(original.to_json()) == original
    assert json.loads(original.to_json())["d"] == 1_500_000_000