"""
Closed vocabulary for the plan catalog.

Categories, feature names, limit names and plan tiers are fixed here and the
catalog file is validated against them at load time.
"""

from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Union


class PlanTier(str, Enum):
    """Canonical subscription plans, cheapest first."""
    FREE = "free"
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return PLAN_HIERARCHY[self]


PLAN_HIERARCHY: Mapping[PlanTier, int] = MappingProxyType({
    PlanTier.FREE: 0,
    PlanTier.BASIC: 1,
    PlanTier.PROFESSIONAL: 2,
    PlanTier.ENTERPRISE: 3,
})


class FeatureCategory(str, Enum):
    """Groups of related features."""
    CONTACTS = "contacts"
    DEALS = "deals"
    AI_TOOLS = "aiTools"
    COMMUNICATION = "communication"
    ANALYTICS = "analytics"
    SYSTEM = "system"


class LimitName(str, Enum):
    """Countable resources with a numeric cap per plan (-1 means unlimited)."""
    MAX_CONTACTS = "maxContacts"
    MAX_DEALS = "maxDeals"
    MAX_AI_REQUESTS = "maxAIRequests"
    MAX_EMAILS_PER_MONTH = "maxEmailsPerMonth"
    MAX_SMS_PER_MONTH = "maxSMSPerMonth"
    MAX_STORAGE_GB = "maxStorageGB"
    MAX_TEAM_MEMBERS = "maxTeamMembers"


class QuotaPeriod(str, Enum):
    """Window over which a limit's usage counter accumulates."""
    MONTHLY = "monthly"
    LIFETIME = "lifetime"


FEATURE_SCHEMA: Mapping[FeatureCategory, FrozenSet[str]] = MappingProxyType({
    FeatureCategory.CONTACTS: frozenset({
        "view", "create", "edit", "delete", "import", "export",
        "aiEnrichment", "bulkOperations",
    }),
    FeatureCategory.DEALS: frozenset({
        "view", "create", "edit", "delete", "advancedAnalytics", "forecastReports",
    }),
    FeatureCategory.AI_TOOLS: frozenset({
        "basicAI", "advancedAI", "emailComposer", "contentGenerator",
        "businessAnalyzer", "smartSearch", "voiceAnalysis", "documentAnalysis",
        "goalExecution",
    }),
    FeatureCategory.COMMUNICATION: frozenset({
        "basicEmail", "sms", "videoEmail", "automatedCampaigns", "phoneIntegration",
    }),
    FeatureCategory.ANALYTICS: frozenset({
        "basicReports", "advancedReports", "customDashboards", "exportReports",
        "realTimeAnalytics",
    }),
    FeatureCategory.SYSTEM: frozenset({
        "apiAccess", "webhooks", "integrations", "customFields",
        "workflowAutomation", "teamManagement", "whiteLabeling",
    }),
})

# Per-month counters reset; the rest count the standing total.
DEFAULT_LIMIT_PERIODS: Mapping[LimitName, QuotaPeriod] = MappingProxyType({
    LimitName.MAX_CONTACTS: QuotaPeriod.LIFETIME,
    LimitName.MAX_DEALS: QuotaPeriod.LIFETIME,
    LimitName.MAX_AI_REQUESTS: QuotaPeriod.MONTHLY,
    LimitName.MAX_EMAILS_PER_MONTH: QuotaPeriod.MONTHLY,
    LimitName.MAX_SMS_PER_MONTH: QuotaPeriod.MONTHLY,
    LimitName.MAX_STORAGE_GB: QuotaPeriod.LIFETIME,
    LimitName.MAX_TEAM_MEMBERS: QuotaPeriod.LIFETIME,
})


def parse_category(category: Union[str, FeatureCategory]) -> Optional[FeatureCategory]:
    """Return the category enum, or None if the name is not in the schema."""
    if isinstance(category, FeatureCategory):
        return category
    try:
        return FeatureCategory(str(category).strip())
    except ValueError:
        return None


def parse_limit(limit_name: Union[str, LimitName]) -> Optional[LimitName]:
    """Return the limit enum, or None if the name is not in the schema."""
    if isinstance(limit_name, LimitName):
        return limit_name
    try:
        return LimitName(str(limit_name).strip())
    except ValueError:
        return None


def parse_plan_tier(plan_id: Union[str, PlanTier]) -> Optional[PlanTier]:
    if isinstance(plan_id, PlanTier):
        return plan_id
    try:
        return PlanTier(str(plan_id).strip())
    except ValueError:
        return None


def is_known_feature(category: Union[str, FeatureCategory], feature_name: str) -> bool:
    """
    Check whether a category/feature pair exists in the schema at all.

    Separates a misspelled feature name from one a plan simply leaves disabled.
    """
    parsed = parse_category(category)
    if parsed is None:
        return False
    return str(feature_name).strip() in FEATURE_SCHEMA[parsed]
