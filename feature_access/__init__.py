"""
Plan entitlement and usage-quota engine.

This package provides:
- PlanCatalog: immutable plan feature matrix and limits from config/plans.json
- UsageTracker: per-user, per-period counters with atomic check-and-increment
- EntitlementEngine: the single decision point (super admin -> subscription -> plan -> quota)
- AdminOverride: super admin bypass
- AccessGuard: maps decisions to render / upgrade / billing / quota prompts
- Usage stores: in-memory, Redis and SQL backends

Denials are Decision values; only configuration errors are raised.
"""

from feature_access.admin import AdminOverride, context_from_session
from feature_access.catalog import Plan, PlanCatalog
from feature_access.categories import (
    FEATURE_SCHEMA,
    FeatureCategory,
    LimitName,
    PlanTier,
    QuotaPeriod,
    is_known_feature,
)
from feature_access.config import Settings, load_settings
from feature_access.engine import EntitlementEngine, build_engine
from feature_access.errors import (
    CatalogSchemaError,
    EntitlementError,
    UnknownLimitError,
    UnknownPlanError,
    UsageStorageError,
)
from feature_access.guard import AccessGuard, GuardAction, GuardOutcome
from feature_access.models import (
    Decision,
    DecisionOutcome,
    IncrementResult,
    SubscriptionStatus,
    UsageRecord,
    UsageSnapshot,
    UserEntitlementContext,
)
from feature_access.stores import (
    InMemoryUsageStore,
    RedisUsageStore,
    SqlUsageStore,
    build_usage_store,
)
from feature_access.usage import UsageStore, UsageTracker, period_key_for

__all__ = [
    # Catalog
    "Plan",
    "PlanCatalog",
    "FEATURE_SCHEMA",
    "FeatureCategory",
    "LimitName",
    "PlanTier",
    "QuotaPeriod",
    "is_known_feature",
    # Config
    "Settings",
    "load_settings",
    # Engine
    "EntitlementEngine",
    "build_engine",
    "AdminOverride",
    "context_from_session",
    # Guard
    "AccessGuard",
    "GuardAction",
    "GuardOutcome",
    # Models
    "Decision",
    "DecisionOutcome",
    "IncrementResult",
    "SubscriptionStatus",
    "UsageRecord",
    "UsageSnapshot",
    "UserEntitlementContext",
    # Usage
    "UsageStore",
    "UsageTracker",
    "period_key_for",
    "InMemoryUsageStore",
    "RedisUsageStore",
    "SqlUsageStore",
    "build_usage_store",
    # Errors
    "EntitlementError",
    "CatalogSchemaError",
    "UnknownPlanError",
    "UnknownLimitError",
    "UsageStorageError",
]
