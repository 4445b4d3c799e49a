"""
Usage tracking against plan limits.

Counters are kept per (user, limit, period). Each call normalizes "now" into a
period key first, so a stale record from a previous period is never read or
merged; a fresh counter for the new period starts at 0. Stale records stay in
the store until the retention job purges them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Protocol, Tuple, Union

from .categories import DEFAULT_LIMIT_PERIODS, LimitName, QuotaPeriod, parse_limit
from .errors import UnknownLimitError
from .models import IncrementResult, UsageRecord, UsageSnapshot

logger = logging.getLogger(__name__)

LIFETIME_PERIOD_KEY = "lifetime"
UNLIMITED = -1


class UsageStore(Protocol):
    """
    Storage contract consumed by UsageTracker.

    Implementations raise UsageStorageError on any backend failure.
    """

    def get(self, user_id: str, limit_name: str, period_key: str) -> Optional[int]:
        ...

    def get_record(self, user_id: str, limit_name: str, period_key: str) -> Optional[UsageRecord]:
        ...

    def atomic_increment(self, user_id: str, limit_name: str, period_key: str) -> int:
        ...

    def increment_if_below(
        self, user_id: str, limit_name: str, period_key: str, max_allowed: int
    ) -> Tuple[bool, int]:
        ...

    def purge_before(self, period_key: str) -> int:
        ...


def period_key_for(period: QuotaPeriod, now: datetime) -> str:
    """Monthly keys are 'YYYY-MM' in UTC; lifetime counters share one key."""
    if period is QuotaPeriod.LIFETIME:
        return LIFETIME_PERIOD_KEY
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    return now.astimezone(timezone.utc).strftime("%Y-%m")


def previous_month_key(period_key: str, months_back: int) -> str:
    """Shift a 'YYYY-MM' key back by a number of months."""
    year, month = (int(part) for part in period_key.split("-"))
    index = year * 12 + (month - 1) - months_back
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def is_monthly_key(period_key: str) -> bool:
    return period_key != LIFETIME_PERIOD_KEY


class UsageTracker:
    """Per-user counters checked and incremented atomically against a cap."""

    def __init__(
        self,
        store: UsageStore,
        limit_periods: Optional[Mapping[LimitName, QuotaPeriod]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._limit_periods = dict(DEFAULT_LIMIT_PERIODS)
        self._limit_periods.update(limit_periods or {})
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def current_period_key(self, limit_name: Union[LimitName, str]) -> str:
        limit = self._require_limit(limit_name)
        return period_key_for(self._limit_periods[limit], self._clock())

    def get_current_usage(self, user_id: str, limit_name: Union[LimitName, str]) -> int:
        """0 when nothing has been recorded this period. Never writes."""
        normalized_user_id = _require_user_id(user_id)
        limit = self._require_limit(limit_name)
        period_key = self.current_period_key(limit)
        count = self.store.get(normalized_user_id, limit.value, period_key)
        return count or 0

    def check_and_increment(
        self,
        user_id: str,
        limit_name: Union[LimitName, str],
        max_allowed: int,
    ) -> IncrementResult:
        """
        Consume one unit unless that would exceed the cap.

        The read and the write happen in one store operation so concurrent
        callers can never jointly pass the cap. A denied result carries the
        unchanged count.
        """
        normalized_user_id = _require_user_id(user_id)
        limit = self._require_limit(limit_name)
        if max_allowed < UNLIMITED:
            raise ValueError("max_allowed must be -1 (unlimited) or a non-negative integer")

        period_key = self.current_period_key(limit)
        granted, count = self.store.increment_if_below(
            normalized_user_id, limit.value, period_key, max_allowed
        )
        if not granted:
            logger.info(
                "Usage limit reached",
                extra={
                    "user_id": normalized_user_id,
                    "limit_name": limit.value,
                    "period_key": period_key,
                    "current": count,
                    "max": max_allowed,
                },
            )
        return IncrementResult(
            granted=granted,
            count=count,
            max_allowed=max_allowed,
            limit_name=limit.value,
            period_key=period_key,
        )

    def usage_snapshot(
        self,
        user_id: str,
        limit_name: Union[LimitName, str],
        max_allowed: int,
    ) -> UsageSnapshot:
        limit = self._require_limit(limit_name)
        return UsageSnapshot(
            limit_name=limit.value,
            current=self.get_current_usage(user_id, limit),
            max_allowed=max_allowed,
            period_key=self.current_period_key(limit),
        )

    @staticmethod
    def _require_limit(limit_name: Union[LimitName, str]) -> LimitName:
        limit = parse_limit(limit_name)
        if limit is None:
            raise UnknownLimitError(str(limit_name))
        return limit


def _require_user_id(user_id: str) -> str:
    normalized = str(user_id).strip()
    if not normalized:
        raise ValueError("user_id is required")
    return normalized
