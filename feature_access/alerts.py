"""
Alerts for usage storage failures and repeated deny events.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import DefaultDict, List, Optional

logger = logging.getLogger(__name__)

# Deny timestamps per user inside the last minute
_deny_counts: DefaultDict[str, List[float]] = defaultdict(list)
_deny_lock = threading.Lock()
DENY_THRESHOLD_PER_MIN = 10


def emit_usage_storage_failure(user_id: str, limit_name: str, error_message: str) -> None:
    """Usage backend failed; the request was denied (fail closed)."""
    logger.error(
        "Usage storage failure, quota check failed closed",
        extra={"user_id": user_id, "limit_name": limit_name, "error": error_message},
    )


def _record_deny(user_id: str, now: float) -> int:
    cutoff = now - 60
    with _deny_lock:
        recent = [t for t in _deny_counts[user_id] if t > cutoff]
        recent.append(now)
        _deny_counts[user_id] = recent
        return len(recent)


def record_deny_and_alert(
    user_id: str,
    category: str,
    feature: str,
    now: Optional[float] = None,
) -> int:
    """Record a deny event; alert if over threshold per minute. Returns the window count."""
    count = _record_deny(user_id, now if now is not None else time.time())
    if count >= DENY_THRESHOLD_PER_MIN:
        emit_deny_alert(user_id, category, feature, count)
    return count


def emit_deny_alert(user_id: str, category: str, feature: str, count: int) -> None:
    """Alert on repeated deny events (>N/min)."""
    logger.warning(
        "Repeated entitlement deny events",
        extra={
            "user_id": user_id,
            "category": category,
            "feature": feature,
            "count_per_min": count,
        },
    )


def reset_deny_counts() -> None:
    with _deny_lock:
        _deny_counts.clear()
