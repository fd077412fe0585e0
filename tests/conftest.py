from __future__ import annotations

import fnmatch
import time
from datetime import datetime, timedelta, timezone

import pytest
import redis
from fastapi.testclient import TestClient

from app import create_app
from backend import VolatileRoomStore
from pubsub import LocalPubSub


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakePubSubChannel:
    """Stands in for redis.client.PubSub: hands out queued messages, then fails or times out."""

    def __init__(self, messages=(), error: Exception | None = None):
        self.messages = list(messages)
        self.error = error
        self.subscribed: list[str] = []
        self.calls = 0
        self.closed = False

    def push(self, data: str) -> None:
        self.messages.append({"type": "message", "channel": self.subscribed[0], "data": data})

    def subscribe(self, *channels):
        self.subscribed.extend(channels)

    def get_message(self, timeout=0.0, ignore_subscribe_messages=False):
        self.calls += 1
        if self.messages:
            return self.messages.pop(0)
        if self.error is not None:
            raise self.error
        time.sleep(min(timeout, 0.01))
        return None

    def close(self):
        self.closed = True


class FakeRedis:
    """Just enough of the redis-py client for RedisRoomStore and RedisPubSub."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.channels: list[FakePubSubChannel] = []
        self.pubsub_error: Exception | None = None

    def ping(self):
        return True

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None, nx=False, xx=False):
        if nx and key in self.data:
            return None
        if xx and key not in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    def exists(self, *keys):
        return sum(1 for key in keys if key in self.data)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    def scan_iter(self, match="*"):
        return iter([key for key in list(self.data) if fnmatch.fnmatch(key, match)])

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    def pubsub(self):
        channel = FakePubSubChannel(error=self.pubsub_error)
        self.channels.append(channel)
        return channel


class BrokenRedis(FakeRedis):
    def _fail(self, *args, **kwargs):
        raise redis.exceptions.ConnectionError("Connection refused")

    ping = get = set = exists = delete = scan_iter = publish = _fail


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> VolatileRoomStore:
    return VolatileRoomStore(ttl_seconds=3600, clock=clock)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def client(store):
    app = create_app(store=store, pubsub=LocalPubSub(), sweep_interval=3600)
    with TestClient(app) as test_client:
        yield test_client
