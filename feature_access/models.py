from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from .categories import LimitName, PlanTier, parse_limit, parse_plan_tier


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    EXPIRED = "expired"

    @property
    def is_active(self) -> bool:
        return self is not SubscriptionStatus.EXPIRED


class DecisionOutcome(str, Enum):
    ALLOWED = "Allowed"
    DENIED_BY_PLAN = "DeniedByPlan"
    DENIED_BY_SUBSCRIPTION_INACTIVE = "DeniedBySubscriptionInactive"
    QUOTA_EXCEEDED = "QuotaExceeded"


@dataclass(frozen=True)
class UserEntitlementContext:
    """Per-request view of an authenticated user. Never persisted."""

    user_id: str
    plan_id: Union[PlanTier, str]
    is_super_admin: bool = False
    subscription_status: Union[SubscriptionStatus, str] = SubscriptionStatus.ACTIVE

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        status = self.subscription_status
        if not isinstance(status, SubscriptionStatus):
            try:
                status = SubscriptionStatus(str(status).strip())
            except ValueError:
                raise ValueError(
                    "subscription_status must be one of: active, trial, expired"
                ) from None
        # Unknown plan ids are kept as strings so the catalog raises UnknownPlanError.
        plan_id = parse_plan_tier(self.plan_id) or str(self.plan_id).strip()
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "subscription_status", status)
        object.__setattr__(self, "plan_id", plan_id)
        object.__setattr__(self, "is_super_admin", self.is_super_admin is True)


@dataclass(frozen=True)
class Decision:
    """
    Result of a single entitlement evaluation.

    Computed fresh on every call; callers must not cache it beyond one render.
    """

    outcome: DecisionOutcome
    limit_name: Optional[str] = None
    current: Optional[int] = None
    max_allowed: Optional[int] = None
    required_plan: Optional[PlanTier] = None
    usage_unavailable: bool = False

    @classmethod
    def allowed(cls) -> "Decision":
        return cls(outcome=DecisionOutcome.ALLOWED)

    @classmethod
    def denied_by_plan(cls, required_plan: Optional[PlanTier] = None) -> "Decision":
        return cls(outcome=DecisionOutcome.DENIED_BY_PLAN, required_plan=required_plan)

    @classmethod
    def denied_by_subscription_inactive(cls) -> "Decision":
        return cls(outcome=DecisionOutcome.DENIED_BY_SUBSCRIPTION_INACTIVE)

    @classmethod
    def quota_exceeded(cls, limit_name: str, current: int, max_allowed: int) -> "Decision":
        return cls(
            outcome=DecisionOutcome.QUOTA_EXCEEDED,
            limit_name=str(limit_name),
            current=current,
            max_allowed=max_allowed,
        )

    @classmethod
    def quota_unverifiable(cls, limit_name: str, max_allowed: int) -> "Decision":
        """Fail-closed decision used when usage storage could not be reached."""
        return cls(
            outcome=DecisionOutcome.QUOTA_EXCEEDED,
            limit_name=str(limit_name),
            current=None,
            max_allowed=max_allowed,
            usage_unavailable=True,
        )

    @property
    def is_allowed(self) -> bool:
        return self.outcome is DecisionOutcome.ALLOWED

    def to_dict(self) -> Dict[str, Any]:
        if self.outcome is DecisionOutcome.QUOTA_EXCEEDED:
            body: Dict[str, Any] = {
                "limitName": self.limit_name,
                "current": self.current,
                "max": self.max_allowed,
            }
            if self.usage_unavailable:
                body["usageUnavailable"] = True
            return {self.outcome.value: body}
        if self.outcome is DecisionOutcome.DENIED_BY_PLAN and self.required_plan is not None:
            return {self.outcome.value: {"requiredPlan": self.required_plan.value}}
        return {self.outcome.value: {}}


@dataclass(frozen=True)
class UsageRecord:
    """One counter per (user, limit, period). Written only by usage stores."""

    user_id: str
    limit_name: str
    period_key: str
    count: int
    last_reset_at: datetime

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError("count must be non-negative")
        if self.last_reset_at.tzinfo is None:
            raise ValueError("last_reset_at must be timezone-aware")
        limit = parse_limit(self.limit_name)
        if limit is not None:
            object.__setattr__(self, "limit_name", limit.value)


@dataclass(frozen=True)
class IncrementResult:
    """Outcome of UsageTracker.check_and_increment."""

    granted: bool
    count: int
    max_allowed: int
    limit_name: str
    period_key: str


@dataclass(frozen=True)
class UsageSnapshot:
    """Read-only quota view for badges and remaining-quota messaging."""

    limit_name: str
    current: int
    max_allowed: int
    period_key: str

    @property
    def is_unlimited(self) -> bool:
        return self.max_allowed == -1

    @property
    def remaining(self) -> Optional[int]:
        if self.is_unlimited:
            return None
        return max(0, self.max_allowed - self.current)

    @property
    def is_within_limit(self) -> bool:
        return self.is_unlimited or self.current < self.max_allowed

    @property
    def percentage(self) -> float:
        if self.is_unlimited:
            return 0.0
        if self.max_allowed == 0:
            return 100.0
        return min(self.current / self.max_allowed * 100, 100.0)


def normalize_limit_name(limit_name: Union[LimitName, str]) -> str:
    parsed = parse_limit(limit_name)
    return parsed.value if parsed is not None else str(limit_name).strip()
