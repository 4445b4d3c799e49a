"""
Consumer-facing guard for protected content.

Maps a Decision to what the consumer should show. Every check() call
re-evaluates through the engine; outcomes are valid for a single render only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .categories import FeatureCategory, LimitName, PlanTier
from .engine import EntitlementEngine
from .models import Decision, DecisionOutcome, UserEntitlementContext

NOT_AVAILABLE_MESSAGE = "This feature is not available in your current plan."
BILLING_MESSAGE = "Your subscription is inactive. Update your billing details to continue."
USAGE_UNAVAILABLE_MESSAGE = "Usage could not be verified right now. Please try again shortly."


class GuardAction(str, Enum):
    RENDER = "render"
    UPGRADE_PROMPT = "upgrade_prompt"
    BILLING_PROMPT = "billing_prompt"
    QUOTA_PROMPT = "quota_prompt"
    SERVICE_UNAVAILABLE = "service_unavailable"


@dataclass(frozen=True)
class GuardOutcome:
    action: GuardAction
    decision: Decision
    message: str = ""
    available_in_plan: Optional[PlanTier] = None
    current: Optional[int] = None
    max_allowed: Optional[int] = None

    @property
    def should_render(self) -> bool:
        return self.action is GuardAction.RENDER


def upgrade_message(available_in_plan: Optional[PlanTier]) -> str:
    if available_in_plan is None:
        return NOT_AVAILABLE_MESSAGE
    return (
        f"This feature is available in the {available_in_plan.value.upper()} plan. "
        "Upgrade to unlock it."
    )


def quota_message(current: int, max_allowed: int) -> str:
    return (
        f"You have used {current} of {max_allowed} allowed this period. "
        "Upgrade your plan for a higher limit."
    )


class AccessGuard:
    """Wraps protected content; renders only on Allowed."""

    def __init__(self, engine: EntitlementEngine) -> None:
        self.engine = engine

    def check(
        self,
        context: UserEntitlementContext,
        category: Union[FeatureCategory, str],
        feature_name: str,
        limit_name: Optional[Union[LimitName, str]] = None,
    ) -> GuardOutcome:
        decision = self.engine.evaluate(context, category, feature_name, limit_name=limit_name)
        return self.outcome_for(decision)

    @staticmethod
    def outcome_for(decision: Decision) -> GuardOutcome:
        if decision.outcome is DecisionOutcome.ALLOWED:
            return GuardOutcome(action=GuardAction.RENDER, decision=decision)

        if decision.outcome is DecisionOutcome.DENIED_BY_SUBSCRIPTION_INACTIVE:
            return GuardOutcome(
                action=GuardAction.BILLING_PROMPT,
                decision=decision,
                message=BILLING_MESSAGE,
            )

        if decision.outcome is DecisionOutcome.DENIED_BY_PLAN:
            return GuardOutcome(
                action=GuardAction.UPGRADE_PROMPT,
                decision=decision,
                message=upgrade_message(decision.required_plan),
                available_in_plan=decision.required_plan,
            )

        if decision.usage_unavailable:
            return GuardOutcome(
                action=GuardAction.SERVICE_UNAVAILABLE,
                decision=decision,
                message=USAGE_UNAVAILABLE_MESSAGE,
                max_allowed=decision.max_allowed,
            )

        return GuardOutcome(
            action=GuardAction.QUOTA_PROMPT,
            decision=decision,
            message=quota_message(decision.current or 0, decision.max_allowed or 0),
            current=decision.current,
            max_allowed=decision.max_allowed,
        )
