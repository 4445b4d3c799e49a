from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from feature_access.categories import QuotaPeriod
from feature_access.config import load_settings
from feature_access.errors import UsageStorageError
from feature_access.stores import build_usage_store
from feature_access.usage import UsageStore, period_key_for, previous_month_key

logger = logging.getLogger(__name__)


@dataclass
class RetentionStats:
    started_at: str
    cutoff_period_key: Optional[str] = None
    completed_at: Optional[str] = None
    purged_records: int = 0
    errors: int = 0


def run_usage_retention_cycle(
    store: Optional[UsageStore] = None,
    now: Optional[datetime] = None,
    keep_periods: Optional[int] = None,
) -> RetentionStats:
    """Background retention job.

    Responsibilities:
    - delete monthly usage records older than the retention window
    - never touch lifetime counters or the current period
    """
    settings = None
    if store is None or keep_periods is None:
        settings = load_settings()
    usage_store = store or build_usage_store(settings)
    keep = keep_periods if keep_periods is not None else settings.usage_retention_periods
    if keep < 1:
        raise ValueError("keep_periods must be at least 1")

    current = now or datetime.now(timezone.utc)
    stats = RetentionStats(started_at=current.isoformat())
    # keep=1 keeps only the current month
    cutoff = previous_month_key(period_key_for(QuotaPeriod.MONTHLY, current), keep - 1)
    stats.cutoff_period_key = cutoff

    try:
        stats.purged_records = usage_store.purge_before(cutoff)
    except UsageStorageError as exc:
        stats.errors += 1
        logger.error("Usage retention purge failed", extra={"cutoff": cutoff, "error": str(exc)})

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info(
        "Usage retention cycle complete",
        extra={"cutoff": cutoff, "purged_records": stats.purged_records, "errors": stats.errors},
    )
    return stats


def run_forever(interval_seconds: int = 3600) -> None:
    import time

    store = build_usage_store(load_settings())
    while True:
        run_usage_retention_cycle(store=store)
        time.sleep(interval_seconds)
