"""
Usage store backends.

- InMemoryUsageStore: per-key locks, for tests and single-process deployments
- RedisUsageStore: hash per counter, WATCH/MULTI compare-and-increment
- SqlUsageStore: SQLAlchemy table with conditional UPDATE

All backends wrap their driver errors in UsageStorageError.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import redis
from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DEFAULT_USAGE_KEY_TTL_SECONDS, Settings
from .errors import UsageStorageError
from .models import UsageRecord
from .usage import LIFETIME_PERIOD_KEY, UNLIMITED, UsageStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_purgeable(period_key: str, cutoff_key: str) -> bool:
    return period_key != LIFETIME_PERIOD_KEY and period_key < cutoff_key


def _decode(value):
    """Clients built without decode_responses=True return bytes."""
    return value.decode("utf-8") if isinstance(value, bytes) else value


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryUsageStore:
    """Dict-backed store; read-modify-write is serialized per counter key."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or _utcnow
        self._records: Dict[Tuple[str, str, str], UsageRecord] = {}
        self._locks: Dict[Tuple[str, str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: Tuple[str, str, str]) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def get(self, user_id: str, limit_name: str, period_key: str) -> Optional[int]:
        record = self._records.get((user_id, limit_name, period_key))
        return record.count if record else None

    def get_record(self, user_id: str, limit_name: str, period_key: str) -> Optional[UsageRecord]:
        return self._records.get((user_id, limit_name, period_key))

    def atomic_increment(self, user_id: str, limit_name: str, period_key: str) -> int:
        _, count = self.increment_if_below(user_id, limit_name, period_key, UNLIMITED)
        return count

    def increment_if_below(
        self, user_id: str, limit_name: str, period_key: str, max_allowed: int
    ) -> Tuple[bool, int]:
        key = (user_id, limit_name, period_key)
        with self._lock_for(key):
            record = self._records.get(key)
            current = record.count if record else 0
            if max_allowed != UNLIMITED and current + 1 > max_allowed:
                return False, current
            self._records[key] = UsageRecord(
                user_id=user_id,
                limit_name=limit_name,
                period_key=period_key,
                count=current + 1,
                last_reset_at=record.last_reset_at if record else self._clock(),
            )
            return True, current + 1

    def purge_before(self, period_key: str) -> int:
        with self._registry_lock:
            stale = [key for key in self._records if _is_purgeable(key[2], period_key)]
            for key in stale:
                self._records.pop(key, None)
                self._locks.pop(key, None)
        return len(stale)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class RedisUsageStore:
    """
    Redis-backed counters.

    Each counter is a hash ``usage:v1:{user_id}:{limit_name}:{period_key}``
    holding ``count`` and ``reset_at``. The conditional increment runs as an
    optimistic transaction: WATCH the key, read the count, then MULTI/EXEC the
    increment; a concurrent write aborts EXEC with WatchError and the check is
    retried against the new value.
    """

    KEY_PREFIX = "usage:v1:"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        ttl_seconds: int = DEFAULT_USAGE_KEY_TTL_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self._redis = client or redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        self._ttl_seconds = ttl_seconds
        self._clock = clock or _utcnow

    @classmethod
    def _key(cls, user_id: str, limit_name: str, period_key: str) -> str:
        return f"{cls.KEY_PREFIX}{user_id}:{limit_name}:{period_key}"

    def get(self, user_id: str, limit_name: str, period_key: str) -> Optional[int]:
        try:
            raw = self._redis.hget(self._key(user_id, limit_name, period_key), "count")
        except redis.RedisError as exc:
            raise UsageStorageError(str(exc), cause=exc) from exc
        return int(raw) if raw is not None else None

    def get_record(self, user_id: str, limit_name: str, period_key: str) -> Optional[UsageRecord]:
        try:
            raw = self._redis.hgetall(self._key(user_id, limit_name, period_key))
        except redis.RedisError as exc:
            raise UsageStorageError(str(exc), cause=exc) from exc
        if not raw:
            return None
        raw = {_decode(field): _decode(value) for field, value in raw.items()}
        return UsageRecord(
            user_id=user_id,
            limit_name=limit_name,
            period_key=period_key,
            count=int(raw.get("count", 0)),
            last_reset_at=datetime.fromisoformat(raw["reset_at"]),
        )

    def atomic_increment(self, user_id: str, limit_name: str, period_key: str) -> int:
        _, count = self.increment_if_below(user_id, limit_name, period_key, UNLIMITED)
        return count

    def increment_if_below(
        self, user_id: str, limit_name: str, period_key: str, max_allowed: int
    ) -> Tuple[bool, int]:
        key = self._key(user_id, limit_name, period_key)
        try:
            with self._redis.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        raw = pipe.hget(key, "count")
                        current = int(raw) if raw is not None else 0
                        if max_allowed != UNLIMITED and current + 1 > max_allowed:
                            pipe.unwatch()
                            return False, current
                        pipe.multi()
                        pipe.hincrby(key, "count", 1)
                        pipe.hsetnx(key, "reset_at", self._clock().isoformat())
                        pipe.expire(key, self._ttl_seconds)
                        results = pipe.execute()
                        return True, int(results[0])
                    except redis.WatchError:
                        logger.debug("Usage counter changed during check, retrying", extra={"key": key})
                        continue
        except redis.RedisError as exc:
            raise UsageStorageError(str(exc), cause=exc) from exc

    def purge_before(self, period_key: str) -> int:
        removed = 0
        try:
            for key in self._redis.scan_iter(match=f"{self.KEY_PREFIX}*"):
                stored_period = _decode(key).rsplit(":", 1)[-1]
                if _is_purgeable(stored_period, period_key):
                    removed += int(self._redis.delete(key))
        except redis.RedisError as exc:
            raise UsageStorageError(str(exc), cause=exc) from exc
        return removed


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

Base = declarative_base()


class UsageRecordRow(Base):
    """
    One usage counter per (user, limit, period).

    The unique constraint makes concurrent first-inserts collide instead of
    creating duplicate counters.
    """

    __tablename__ = "usage_records"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    user_id = Column(String(255), nullable=False, index=True)
    limit_name = Column(String(64), nullable=False)
    period_key = Column(String(16), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    last_reset_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "limit_name", "period_key",
            name="uq_usage_records_user_limit_period"
        ),
        Index("ix_usage_records_period_key", "period_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageRecordRow(user_id={self.user_id}, limit_name={self.limit_name}, "
            f"period_key={self.period_key}, count={self.count})>"
        )


class SqlUsageStore:
    """
    SQLAlchemy-backed counters.

    The conditional ``UPDATE ... SET count = count + 1 WHERE count < :max`` is
    atomic at the row level; a missing row is inserted with count 1 and a
    unique-constraint collision retries the update. A 0-row UPDATE is a denial
    only when the row exists and is already at the cap; a row that appeared
    after the UPDATE ran is retried.
    """

    MAX_ATTEMPTS = 5

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine=None,
        clock: Optional[Clock] = None,
        create_tables: bool = True,
    ) -> None:
        if engine is None and not database_url:
            raise ValueError("database_url or engine is required")
        self._engine = engine or create_engine(database_url)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._clock = clock or _utcnow
        if create_tables:
            Base.metadata.create_all(self._engine)

    @staticmethod
    def _filters(user_id: str, limit_name: str, period_key: str):
        return (
            UsageRecordRow.user_id == user_id,
            UsageRecordRow.limit_name == limit_name,
            UsageRecordRow.period_key == period_key,
        )

    def get(self, user_id: str, limit_name: str, period_key: str) -> Optional[int]:
        try:
            with self._session_factory() as session:
                return session.execute(
                    select(UsageRecordRow.count).where(*self._filters(user_id, limit_name, period_key))
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise UsageStorageError(str(exc), cause=exc) from exc

    def get_record(self, user_id: str, limit_name: str, period_key: str) -> Optional[UsageRecord]:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(UsageRecordRow).where(*self._filters(user_id, limit_name, period_key))
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise UsageStorageError(str(exc), cause=exc) from exc
        if row is None:
            return None
        last_reset_at = row.last_reset_at
        if last_reset_at.tzinfo is None:
            # SQLite drops tzinfo on round-trip
            last_reset_at = last_reset_at.replace(tzinfo=timezone.utc)
        return UsageRecord(
            user_id=row.user_id,
            limit_name=row.limit_name,
            period_key=row.period_key,
            count=row.count,
            last_reset_at=last_reset_at,
        )

    def atomic_increment(self, user_id: str, limit_name: str, period_key: str) -> int:
        _, count = self.increment_if_below(user_id, limit_name, period_key, UNLIMITED)
        return count

    def increment_if_below(
        self, user_id: str, limit_name: str, period_key: str, max_allowed: int
    ) -> Tuple[bool, int]:
        filters = self._filters(user_id, limit_name, period_key)
        try:
            with self._session_factory() as session:
                for _ in range(self.MAX_ATTEMPTS):
                    stmt = update(UsageRecordRow).where(*filters)
                    if max_allowed != UNLIMITED:
                        stmt = stmt.where(UsageRecordRow.count < max_allowed)
                    stmt = stmt.values(count=UsageRecordRow.count + 1).execution_options(
                        synchronize_session=False
                    )
                    if session.execute(stmt).rowcount == 1:
                        count = session.execute(
                            select(UsageRecordRow.count).where(*filters)
                        ).scalar_one()
                        session.commit()
                        return True, count

                    existing = session.execute(
                        select(UsageRecordRow.count).where(*filters)
                    ).scalar_one_or_none()
                    if existing is not None:
                        if max_allowed != UNLIMITED and existing >= max_allowed:
                            session.commit()
                            return False, existing
                        # row was inserted concurrently after the UPDATE ran
                        continue
                    if max_allowed == 0:
                        session.commit()
                        return False, 0

                    session.add(UsageRecordRow(
                        user_id=user_id,
                        limit_name=limit_name,
                        period_key=period_key,
                        count=1,
                        last_reset_at=self._clock(),
                    ))
                    try:
                        session.commit()
                        return True, 1
                    except IntegrityError:
                        session.rollback()
                        continue
                raise UsageStorageError("usage counter insert kept conflicting")
        except SQLAlchemyError as exc:
            raise UsageStorageError(str(exc), cause=exc) from exc

    def purge_before(self, period_key: str) -> int:
        try:
            with self._session_factory() as session:
                result = session.execute(
                    delete(UsageRecordRow)
                    .where(UsageRecordRow.period_key != LIFETIME_PERIOD_KEY)
                    .where(UsageRecordRow.period_key < period_key)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as exc:
            raise UsageStorageError(str(exc), cause=exc) from exc


def build_usage_store(settings: Settings, clock: Optional[Clock] = None) -> UsageStore:
    backend = settings.usage_store_backend
    if backend == "redis":
        return RedisUsageStore(
            redis_url=settings.redis_url,
            ttl_seconds=settings.usage_key_ttl_seconds,
            clock=clock,
        )
    if backend == "sql":
        return SqlUsageStore(database_url=settings.usage_database_url, clock=clock)
    return InMemoryUsageStore(clock=clock)
