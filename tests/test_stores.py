from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest
import redis
from sqlalchemy import create_engine, event

from feature_access.config import Settings
from feature_access.errors import UsageStorageError
from feature_access.stores import (
    InMemoryUsageStore,
    RedisUsageStore,
    SqlUsageStore,
    build_usage_store,
)


class _FakeRedis:
    """Hash commands plus WATCH/MULTI/EXEC semantics, enough for RedisUsageStore."""

    def __init__(self):
        self.hashes = {}
        self.ttls = {}
        self.versions = {}
        self.before_execute = None
        # EXEC checks the watched version and applies commands as one step
        self.lock = threading.RLock()

    def _bump(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def hincrby(self, key, field, amount):
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        self._bump(key)
        return int(h[field])

    def hsetnx(self, key, field, value):
        h = self.hashes.setdefault(key, {})
        if field in h:
            return 0
        h[field] = value
        self._bump(key)
        return 1

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.hashes.pop(key, None) is not None else 0

    def scan_iter(self, match=None):
        prefix = (match or "").rstrip("*")
        return [k for k in list(self.hashes) if k.startswith(prefix)]

    def pipeline(self):
        return _FakePipeline(self)


class _FakePipeline:
    def __init__(self, client):
        self.client = client
        self.watched = None
        self.version = None
        self.commands = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.watched = None
        self.commands = []
        return False

    def watch(self, key):
        self.watched = key
        self.version = self.client.versions.get(key, 0)

    def unwatch(self):
        self.watched = None

    def hget(self, key, field):
        return self.client.hget(key, field)

    def multi(self):
        self.commands = []

    def hincrby(self, key, field, amount):
        self.commands.append(("hincrby", (key, field, amount)))

    def hsetnx(self, key, field, value):
        self.commands.append(("hsetnx", (key, field, value)))

    def expire(self, key, seconds):
        self.commands.append(("expire", (key, seconds)))

    def execute(self):
        if self.client.before_execute is not None:
            hook, self.client.before_execute = self.client.before_execute, None
            hook()
        with self.client.lock:
            return self._execute_locked()

    def _execute_locked(self):
        if self.watched is not None and self.client.versions.get(self.watched, 0) != self.version:
            self.commands = []
            self.watched = None
            raise redis.WatchError("watched key changed")
        results = [getattr(self.client, name)(*args) for name, args in self.commands]
        self.commands = []
        self.watched = None
        return results


class _BytesRedis(_FakeRedis):
    """Replies the way a client without decode_responses=True does."""

    def hget(self, key, field):
        value = super().hget(key, field)
        return value.encode() if value is not None else None

    def hgetall(self, key):
        return {k.encode(): v.encode() for k, v in super().hgetall(key).items()}

    def scan_iter(self, match=None):
        return [k.encode() for k in super().scan_iter(match)]

    def delete(self, key):
        return super().delete(key.decode() if isinstance(key, bytes) else key)


def _serialized_sqlite_engine(path):
    """SQLite engine whose transactions take the write lock up front."""
    engine = create_engine(f"sqlite:///{path}", connect_args={"timeout": 30})

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class _BrokenRedis:
    def hget(self, key, field):
        raise redis.ConnectionError("connection refused")

    def hgetall(self, key):
        raise redis.ConnectionError("connection refused")

    def pipeline(self):
        raise redis.ConnectionError("connection refused")

    def scan_iter(self, match=None):
        raise redis.TimeoutError("timed out")


@pytest.fixture
def fake_redis():
    return _FakeRedis()


@pytest.fixture
def redis_store(fake_redis, clock):
    return RedisUsageStore(client=fake_redis, ttl_seconds=3600, clock=clock)


@pytest.fixture
def sql_store(tmp_path, clock):
    return SqlUsageStore(database_url=f"sqlite:///{tmp_path / 'usage.db'}", clock=clock)


@pytest.fixture(params=["memory", "redis", "sql"])
def any_store(request, clock, fake_redis, tmp_path):
    if request.param == "memory":
        return InMemoryUsageStore(clock=clock)
    if request.param == "redis":
        return RedisUsageStore(client=fake_redis, ttl_seconds=3600, clock=clock)
    return SqlUsageStore(engine=_serialized_sqlite_engine(tmp_path / "usage.db"), clock=clock)


# =============================================================================
# Storage contract, every backend
# =============================================================================


def test_get_returns_none_before_first_increment(any_store):
    assert any_store.get("user-1", "maxAIRequests", "2024-06") is None
    assert any_store.get_record("user-1", "maxAIRequests", "2024-06") is None


def test_increment_if_below_stops_at_cap(any_store):
    outcomes = [any_store.increment_if_below("user-1", "maxAIRequests", "2024-06", 3) for _ in range(5)]

    assert outcomes == [(True, 1), (True, 2), (True, 3), (False, 3), (False, 3)]
    assert any_store.get("user-1", "maxAIRequests", "2024-06") == 3


def test_increment_if_below_zero_cap_never_creates_usage(any_store):
    assert any_store.increment_if_below("user-1", "maxSMSPerMonth", "2024-06", 0) == (False, 0)
    assert any_store.get("user-1", "maxSMSPerMonth", "2024-06") is None


def test_atomic_increment_is_unbounded(any_store):
    for expected in range(1, 4):
        assert any_store.atomic_increment("user-1", "maxEmailsPerMonth", "2024-06") == expected


def test_periods_are_separate_counters(any_store):
    any_store.atomic_increment("user-1", "maxAIRequests", "2024-05")
    any_store.atomic_increment("user-1", "maxAIRequests", "2024-05")

    assert any_store.increment_if_below("user-1", "maxAIRequests", "2024-06", 1) == (True, 1)
    assert any_store.get("user-1", "maxAIRequests", "2024-05") == 2


def test_get_record_exposes_reset_timestamp(any_store, clock):
    any_store.atomic_increment("user-1", "maxAIRequests", "2024-06")

    record = any_store.get_record("user-1", "maxAIRequests", "2024-06")

    assert record.count == 1
    assert record.period_key == "2024-06"
    assert record.last_reset_at == clock.now


def test_purge_before_keeps_lifetime_and_recent_periods(any_store):
    any_store.atomic_increment("user-1", "maxAIRequests", "2024-01")
    any_store.atomic_increment("user-1", "maxAIRequests", "2024-04")
    any_store.atomic_increment("user-1", "maxAIRequests", "2024-06")
    any_store.atomic_increment("user-1", "maxContacts", "lifetime")

    assert any_store.purge_before("2024-04") == 1

    assert any_store.get("user-1", "maxAIRequests", "2024-01") is None
    assert any_store.get("user-1", "maxAIRequests", "2024-04") == 1
    assert any_store.get("user-1", "maxContacts", "lifetime") == 1


@pytest.mark.parametrize("attempts", [5, 10, 25])
def test_parallel_increments_grant_exactly_up_to_cap(any_store, attempts):
    barrier = threading.Barrier(attempts)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker():
        barrier.wait()
        outcome = any_store.increment_if_below("user-1", "maxAIRequests", "2024-06", 10)
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    granted = sorted(count for ok, count in outcomes if ok)
    assert len(outcomes) == attempts
    assert granted == list(range(1, min(attempts, 10) + 1))
    assert all(count == 10 for ok, count in outcomes if not ok)
    assert any_store.get("user-1", "maxAIRequests", "2024-06") == min(attempts, 10)


# =============================================================================
# Redis specifics
# =============================================================================


def test_redis_store_retries_when_watched_key_changes(redis_store, fake_redis):
    redis_store.increment_if_below("user-1", "maxAIRequests", "2024-06", 2)
    key = RedisUsageStore._key("user-1", "maxAIRequests", "2024-06")
    # a concurrent writer takes the last slot between WATCH and EXEC
    fake_redis.before_execute = lambda: fake_redis.hincrby(key, "count", 1)

    assert redis_store.increment_if_below("user-1", "maxAIRequests", "2024-06", 2) == (False, 2)
    assert fake_redis.hget(key, "count") == "2"


def test_redis_store_sets_ttl_on_counters(redis_store, fake_redis):
    redis_store.atomic_increment("user-1", "maxAIRequests", "2024-06")
    assert fake_redis.ttls == {"usage:v1:user-1:maxAIRequests:2024-06": 3600}


def test_redis_store_handles_user_ids_with_colons(redis_store):
    redis_store.atomic_increment("org:42:user", "maxAIRequests", "2024-01")
    assert redis_store.purge_before("2024-02") == 1


def test_redis_store_accepts_bytes_replies(clock):
    store = RedisUsageStore(client=_BytesRedis(), ttl_seconds=3600, clock=clock)
    store.atomic_increment("user-1", "maxAIRequests", "2024-01")
    store.atomic_increment("user-1", "maxAIRequests", "2024-06")

    record = store.get_record("user-1", "maxAIRequests", "2024-06")

    assert record.count == 1
    assert record.last_reset_at == clock.now
    assert store.get("user-1", "maxAIRequests", "2024-06") == 1
    assert store.purge_before("2024-03") == 1


def test_redis_errors_become_usage_storage_errors(clock):
    store = RedisUsageStore(client=_BrokenRedis(), clock=clock)

    with pytest.raises(UsageStorageError) as exc:
        store.increment_if_below("user-1", "maxAIRequests", "2024-06", 5)
    assert isinstance(exc.value.cause, redis.ConnectionError)
    assert exc.value.error_code == "USAGE_UNAVAILABLE_FAIL_CLOSED"

    with pytest.raises(UsageStorageError):
        store.get("user-1", "maxAIRequests", "2024-06")
    with pytest.raises(UsageStorageError):
        store.purge_before("2024-06")


def test_redis_store_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisUsageStore()


# =============================================================================
# SQL specifics
# =============================================================================


def test_sql_store_returns_timezone_aware_records(sql_store):
    sql_store.atomic_increment("user-1", "maxAIRequests", "2024-06")
    record = sql_store.get_record("user-1", "maxAIRequests", "2024-06")
    assert record.last_reset_at.tzinfo is not None
    assert record.last_reset_at == datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def test_sql_store_retries_when_row_appears_after_empty_update(tmp_path, clock):
    engine = create_engine(f"sqlite:///{tmp_path / 'usage.db'}")
    store = SqlUsageStore(engine=engine, clock=clock)
    state = {"updated": False, "inserted": False}

    # a concurrent first request commits the row between this UPDATE and SELECT
    @event.listens_for(engine, "before_cursor_execute")
    def insert_competing_row(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("UPDATE usage_records"):
            state["updated"] = True
        elif state["updated"] and not state["inserted"] and statement.startswith("SELECT"):
            state["inserted"] = True
            cursor.connection.execute(
                "INSERT INTO usage_records (id, user_id, limit_name, period_key, count, last_reset_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                ("competing", "user-1", "maxAIRequests", "2024-06", 1, "2024-06-15 12:00:00.000000"),
            )

    assert store.increment_if_below("user-1", "maxAIRequests", "2024-06", 10) == (True, 2)
    assert state["inserted"] is True
    assert store.get("user-1", "maxAIRequests", "2024-06") == 2


def test_sql_store_denies_existing_row_at_cap(sql_store):
    for _ in range(2):
        sql_store.increment_if_below("user-1", "maxAIRequests", "2024-06", 2)
    assert sql_store.increment_if_below("user-1", "maxAIRequests", "2024-06", 2) == (False, 2)


def test_sql_errors_become_usage_storage_errors(tmp_path):
    unreachable = create_engine(f"sqlite:///{tmp_path / 'missing-dir' / 'usage.db'}")
    store = SqlUsageStore(engine=unreachable, create_tables=False)

    with pytest.raises(UsageStorageError):
        store.increment_if_below("user-1", "maxAIRequests", "2024-06", 5)
    with pytest.raises(UsageStorageError):
        store.get("user-1", "maxAIRequests", "2024-06")


# =============================================================================
# Backend selection
# =============================================================================


def test_build_usage_store_selects_backend(tmp_path):
    assert isinstance(build_usage_store(Settings()), InMemoryUsageStore)
    assert isinstance(
        build_usage_store(Settings(usage_store_backend="sql", usage_database_url=f"sqlite:///{tmp_path / 'u.db'}")),
        SqlUsageStore,
    )
    # redis.from_url connects lazily
    assert isinstance(
        build_usage_store(Settings(usage_store_backend="redis", redis_url="redis://localhost:6399/0")),
        RedisUsageStore,
    )
