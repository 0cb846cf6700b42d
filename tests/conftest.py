"""
Pytest fixtures for testing.

Provides:
- Synchronous database session with rollback (SQLite in-memory)
- Settings, recording dispatcher and a controllable clock
- Cache backends (in-memory and Redis over a fake client)
- Parametrized drivers, snapshot and group repositories
- Factory helpers for callers
"""

import fnmatch
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Generator
from uuid import uuid4

import pytest
import redis
from sqlalchemy import String, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from flagkit.cache import MemoryCacheBackend, RedisCacheBackend
from flagkit.config import FlagSettings
from flagkit.context import Context, Scope
from flagkit.drivers import CacheDriver, DatabaseDriver, MemoryDriver
from flagkit.events import RecordingDispatcher
from flagkit.groups import DatabaseGroupRepository, MemoryGroupRepository
from flagkit.manager import FeatureManager
from flagkit.models import Base
from flagkit.snapshots import (
    CacheSnapshotRepository,
    DatabaseSnapshotRepository,
    MemorySnapshotRepository,
)
from flagkit.timezone import UTC


# Test database URL (SQLite in-memory for speed)
TEST_DATABASE_URL = "sqlite://"


@pytest.fixture(scope="function")
def db_engine():
    """
    Create test database engine.

    pysqlite's own transaction handling breaks SAVEPOINT, so BEGIN is
    emitted explicitly.
    """
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with automatic rollback.

    Each test gets a fresh transaction that's rolled back after.
    """
    session = Session(db_engine, expire_on_commit=False)
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============ Core Fixtures ============


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> FlagSettings:
    return FlagSettings(environment="testing")


@pytest.fixture
def recorder() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def memory_cache() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def fake_redis() -> "FakeRedis":
    return FakeRedis()


@pytest.fixture
def redis_cache(fake_redis) -> RedisCacheBackend:
    """Redis backend over FakeRedis."""
    return RedisCacheBackend(fake_redis)


@pytest.fixture(params=["memory", "cache", "redis", "database"])
def driver(request, recorder, clock):
    """Every driver variant, sharing the recording dispatcher and clock."""
    options = {"dispatcher": recorder, "clock": clock}

    if request.param == "memory":
        return MemoryDriver(**options)
    if request.param == "cache":
        return CacheDriver(request.getfixturevalue("memory_cache"), **options)
    if request.param == "redis":
        return CacheDriver(request.getfixturevalue("redis_cache"), **options)
    return DatabaseDriver(request.getfixturevalue("db"), **options)


@pytest.fixture
def manager(recorder, settings, clock) -> FeatureManager:
    return FeatureManager(
        MemoryDriver(dispatcher=recorder, clock=clock),
        dispatcher=recorder,
        settings=settings,
        clock=clock,
    )


@pytest.fixture(params=["memory", "cache", "database"])
def repository(request, manager, clock):
    """Every snapshot repository variant over the same manager."""
    if request.param == "memory":
        return MemorySnapshotRepository(manager, clock=clock)
    if request.param == "cache":
        return CacheSnapshotRepository(manager, request.getfixturevalue("memory_cache"), clock=clock)
    return DatabaseSnapshotRepository(manager, request.getfixturevalue("db"), clock=clock)


@pytest.fixture(params=["memory", "database"])
def group_repository(request, clock):
    """Every group repository variant."""
    if request.param == "memory":
        return MemoryGroupRepository(clock=clock)
    return DatabaseGroupRepository(request.getfixturevalue("db"), clock=clock)


# ============ Factory Fixtures ============


class EntityBase(DeclarativeBase):
    """Separate metadata so caller entities never touch flagkit tables."""


class Account(EntityBase):
    """Mapped entity whose natural key is its primary key."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True)
    uuid: Mapped[str] = mapped_column(String(36))


@dataclass
class Member:
    """Plain entity exposing get_key()."""
    id: int

    def get_key(self) -> int:
        return self.id


@dataclass
class Team:
    """Contextable caller."""
    id: int
    slug: str = "core"

    def to_context(self) -> Context:
        return Context(id=self.id, type="team")


class ContextFactory:
    """Factory for creating test contexts."""

    def user(self, id: int | None = None) -> Context:
        return Context(id=id if id is not None else uuid4().int % 10_000, type="user")

    def scoped(self, id: int, **constraints) -> Context:
        return Context.scoped(id, "user", Scope("team", constraints))


@pytest.fixture
def contexts() -> ContextFactory:
    """Fixture that provides ContextFactory."""
    return ContextFactory()


# ============ Mock Implementations ============


class FakeRedisLock:
    """Non-blocking stand-in for redis.lock.Lock."""

    def __init__(self, client: "FakeRedis", name: str):
        self.client = client
        self.name = name
        self.owned = False

    def acquire(self) -> bool:
        if self.name in self.client.held_locks:
            return False
        self.client.held_locks.add(self.name)
        self.owned = True
        return True

    def release(self) -> None:
        if not self.owned:
            raise redis.exceptions.LockError("Cannot release an unlocked lock")
        self.client.held_locks.discard(self.name)
        self.owned = False


class FakeRedis:
    """Minimal sync stub for the redis.Redis calls RedisCacheBackend makes."""

    def __init__(self):
        self.data: dict[str, tuple[Any, float | None]] = {}
        self.held_locks: set[str] = set()

    def _live(self, key: str) -> Any:
        entry = self.data.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and time.time() >= expires:
            del self.data[key]
            return None
        return value

    def get(self, key: str) -> Any:
        return self._live(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.data[key] = (value, time.time() + ex if ex else None)
        return True

    def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                del self.data[key]
                deleted += 1
        return deleted

    def mget(self, keys: list[str]) -> list[Any]:
        return [self._live(key) for key in keys]

    def scan_iter(self, match: str = "*"):
        return iter([key for key in list(self.data) if self._live(key) is not None and fnmatch.fnmatchcase(key, match)])

    def ttl(self, key: str) -> int:
        if self._live(key) is None:
            return -2
        expires = self.data[key][1]
        if expires is None:
            return -1
        return int(expires - time.time())

    def lock(self, name: str, timeout: float | None = None, blocking: bool = True, blocking_timeout: float | None = None) -> FakeRedisLock:
        return FakeRedisLock(self, name)

    def close(self) -> None:
        pass
