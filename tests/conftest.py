"""
Shared pytest fixtures for entitlement tests.
"""

from __future__ import annotations

import copy
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from feature_access.alerts import reset_deny_counts
from feature_access.catalog import PlanCatalog
from feature_access.categories import LimitName
from feature_access.engine import EntitlementEngine
from feature_access.stores import InMemoryUsageStore
from feature_access.usage import UsageTracker

PLANS_JSON = Path(__file__).resolve().parents[1] / "config" / "plans.json"


class FixedClock:
    """Settable clock so tests can cross period boundaries."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def _reset_deny_window():
    reset_deny_counts()
    yield
    reset_deny_counts()


@pytest.fixture
def raw_catalog() -> dict:
    with PLANS_JSON.open("r", encoding="utf-8") as handle:
        return json.load(handle)


@pytest.fixture
def mutable_catalog(raw_catalog) -> dict:
    return copy.deepcopy(raw_catalog)


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog.from_file(PLANS_JSON)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock) -> InMemoryUsageStore:
    return InMemoryUsageStore(clock=clock)


@pytest.fixture
def tracker(store, catalog, clock) -> UsageTracker:
    return UsageTracker(
        store,
        limit_periods={limit: catalog.limit_period(limit) for limit in LimitName},
        clock=clock,
    )


@pytest.fixture
def engine(catalog, tracker) -> EntitlementEngine:
    return EntitlementEngine(catalog, tracker)
