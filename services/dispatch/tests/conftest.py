"""
Shared fixtures: an on-disk SQLite store (aiosqlite) and in-memory
stand-ins for the Redis handle the components receive.
"""

import asyncio
import time
from collections import deque

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from app import queries, schema, seed
from app.config import Settings
from app.main import app, wire


# -------------------------------------------------------------------
# Redis test doubles
# -------------------------------------------------------------------

class FakePubSub:
    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.channels: set[str] = set()
        self.messages: deque = deque()
        self.closed = False

    async def subscribe(self, *channels):
        for channel in channels:
            self.channels.add(channel)
            self.messages.append({"type": "subscribe", "channel": channel, "data": 1})
        if self not in self.redis.subscribers:
            self.redis.subscribers.append(self)

    async def unsubscribe(self, *channels):
        await asyncio.sleep(0.01)  # network round trip
        for channel in channels or list(self.channels):
            self.channels.discard(channel)
        if not self.channels and self in self.redis.subscribers:
            self.redis.subscribers.remove(self)

    async def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        while self.messages:
            message = self.messages.popleft()
            if ignore_subscribe_messages and message["type"] != "message":
                continue
            return message
        await asyncio.sleep(0)
        return None

    async def aclose(self):
        await self.unsubscribe()
        await asyncio.sleep(0.01)
        self.closed = True


class FakePipeline:
    """Queues commands and runs them back to back on execute(), like MULTI/EXEC."""

    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.commands = []

    def incr(self, key):
        self.commands.append((self.redis.incr, (key,), {}))
        return self

    def expire(self, key, seconds, nx=False):
        self.commands.append((self.redis.expire, (key, seconds), {"nx": nx}))
        return self

    async def execute(self):
        commands, self.commands = self.commands, []
        return [await command(*args, **kwargs) for command, args, kwargs in commands]


class FakeRedis:
    """SET NX PX / compare-and-delete EVAL / INCR / EXPIRE / PUBLISH"""

    def __init__(self):
        self.values: dict[str, tuple[str, float | None]] = {}
        self.subscribers: list[FakePubSub] = []
        self.published: list[tuple[str, str]] = []

    def _get(self, key):
        item = self.values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and time.monotonic() >= expires_at:
            del self.values[key]
            return None
        return value

    def expires_at(self, key):
        self._get(key)
        item = self.values.get(key)
        return item[1] if item else None

    async def get(self, key):
        return self._get(key)

    async def set(self, key, value, px=None, nx=False):
        if nx and self._get(key) is not None:
            return None
        expires_at = time.monotonic() + px / 1000 if px else None
        self.values[key] = (value, expires_at)
        return True

    async def eval(self, script, numkeys, *args):
        key, token = args[0], args[1]
        if self._get(key) == token:
            del self.values[key]
            return 1
        return 0

    async def incr(self, key):
        count = int(self._get(key) or 0) + 1
        self.values[key] = (str(count), self.expires_at(key))
        return count

    async def expire(self, key, seconds, nx=False):
        if self._get(key) is None:
            return False
        if nx and self.values[key][1] is not None:
            return False
        self.values[key] = (self.values[key][0], time.monotonic() + seconds)
        return True

    async def publish(self, channel, message):
        self.published.append((channel, message))
        receivers = [s for s in self.subscribers if channel in s.channels]
        for subscriber in receivers:
            subscriber.messages.append(
                {"type": "message", "pattern": None, "channel": channel, "data": message}
            )
        return len(receivers)

    def pubsub(self):
        return FakePubSub(self)

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        pass


class BrokenRedis:
    """Every command fails as if the store were unreachable."""

    async def _fail(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")

    set = eval = incr = expire = publish = get = _fail

    def pipeline(self, transaction=True):
        return FakePipeline(self)


# -------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------

@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def broken_redis():
    return BrokenRedis()


@pytest.fixture
def engine(tmp_path):
    """
    Fresh SQLite file per test. NullPool so no connection outlives the
    event loop that opened it (each asyncio.run / TestClient request has its own).
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}", poolclass=NullPool
    )
    asyncio.run(schema.create_schema(engine))
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+aiosqlite://")


@pytest.fixture
def client(settings, redis, engine):
    wire(app, settings, redis, engine)
    return TestClient(app)


@pytest.fixture
def add_partners(session_factory):
    def _add(*partners):
        async def go():
            async with session_factory() as session:
                return await seed.insert_partners(session, list(partners))
        return asyncio.run(go())
    return _add


@pytest.fixture
def add_bookings(session_factory):
    def _add(*bookings):
        async def go():
            async with session_factory() as session:
                return await seed.insert_bookings(session, list(bookings))
        return asyncio.run(go())
    return _add


@pytest.fixture
def fetch_booking(session_factory):
    def _fetch(booking_id):
        async def go():
            async with session_factory() as session:
                return await queries.get_booking(session, booking_id)
        return asyncio.run(go())
    return _fetch


@pytest.fixture
def fetch_partner(session_factory):
    def _fetch(partner_id):
        async def go():
            async with session_factory() as session:
                return await queries.get_partner(session, partner_id)
        return asyncio.run(go())
    return _fetch
