from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from feature_access.errors import UsageStorageError
from feature_access.stores import InMemoryUsageStore
from workers.usage_retention_job import run_usage_retention_cycle

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class _FailingPurgeStore:
    def purge_before(self, period_key):
        raise UsageStorageError("redis down")


@pytest.fixture
def seeded_store(clock):
    store = InMemoryUsageStore(clock=clock)
    for period in ("2024-01", "2024-03", "2024-04", "2024-05", "2024-06"):
        store.atomic_increment("user-1", "maxAIRequests", period)
    store.atomic_increment("user-1", "maxContacts", "lifetime")
    return store


def test_keeps_requested_number_of_monthly_periods(seeded_store):
    stats = run_usage_retention_cycle(store=seeded_store, now=NOW, keep_periods=3)

    assert stats.cutoff_period_key == "2024-04"
    assert stats.purged_records == 2
    assert stats.errors == 0
    assert seeded_store.get("user-1", "maxAIRequests", "2024-03") is None
    assert seeded_store.get("user-1", "maxAIRequests", "2024-04") == 1
    assert seeded_store.get("user-1", "maxContacts", "lifetime") == 1


def test_keep_one_preserves_current_period(seeded_store):
    stats = run_usage_retention_cycle(store=seeded_store, now=NOW, keep_periods=1)

    assert stats.cutoff_period_key == "2024-06"
    assert seeded_store.get("user-1", "maxAIRequests", "2024-06") == 1
    assert seeded_store.get("user-1", "maxAIRequests", "2024-05") is None
    assert seeded_store.get("user-1", "maxContacts", "lifetime") == 1


def test_cutoff_crosses_year_boundary(seeded_store):
    stats = run_usage_retention_cycle(
        store=seeded_store,
        now=datetime(2024, 2, 1, tzinfo=timezone.utc),
        keep_periods=3,
    )
    assert stats.cutoff_period_key == "2023-12"
    assert stats.purged_records == 0


@pytest.mark.parametrize("keep", [0, -3])
def test_invalid_keep_periods_rejected(seeded_store, keep):
    with pytest.raises(ValueError, match="keep_periods"):
        run_usage_retention_cycle(store=seeded_store, now=NOW, keep_periods=keep)


def test_keep_periods_read_from_environment(seeded_store, monkeypatch):
    monkeypatch.setenv("USAGE_RETENTION_PERIODS", "2")
    stats = run_usage_retention_cycle(store=seeded_store, now=NOW)
    assert stats.cutoff_period_key == "2024-05"
    assert stats.purged_records == 3


def test_storage_failure_is_counted_not_raised(caplog):
    with caplog.at_level(logging.ERROR):
        stats = run_usage_retention_cycle(store=_FailingPurgeStore(), now=NOW, keep_periods=3)

    assert stats.errors == 1
    assert stats.purged_records == 0
    assert stats.completed_at is not None
    assert "Usage retention purge failed" in caplog.text
