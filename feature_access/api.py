"""
FastAPI integration for entitlement checks.

Dependencies that block access when a feature is not entitled, plus a
read-only entitlements router for UX (badges, remaining quota). Backend
enforcement through require_feature is authoritative.

Wiring:
    app.state.entitlement_engine = build_engine()

Upstream authentication must set request.state.entitlement_context to a
UserEntitlementContext; this module never builds one from request input.

Usage:
    @router.post("/ai/compose")
    def compose(decision=Depends(require_feature("aiTools", "emailComposer", "maxAIRequests"))):
        ...
"""

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from .engine import EntitlementEngine
from .errors import UnknownLimitError, UsageStorageError
from .guard import AccessGuard, GuardAction
from .models import Decision, UserEntitlementContext

logger = logging.getLogger(__name__)


class DecisionResponse(BaseModel):
    """Response model for a read-only feature evaluation."""

    outcome: str = Field(..., description="Allowed, DeniedByPlan, DeniedBySubscriptionInactive or QuotaExceeded")
    allowed: bool = Field(..., description="True only when the content may be rendered")
    action: str = Field(..., description="What the consumer should show")
    message: str = Field("", description="User-facing explanation for denials")
    available_in_plan: Optional[str] = Field(None, description="Cheapest higher plan with the feature")
    decision: Dict[str, Any] = Field(..., description="Tagged decision payload")


class UsageSnapshotResponse(BaseModel):
    """Response model for a limit's current usage."""

    limit_name: str
    current: int
    max: int = Field(..., description="-1 means unlimited")
    remaining: Optional[int] = Field(None, description="None when unlimited")
    percentage: float
    is_within_limit: bool
    period_key: str


def get_engine(request: Request) -> EntitlementEngine:
    engine = getattr(request.app.state, "entitlement_engine", None)
    if engine is None:
        raise RuntimeError("app.state.entitlement_engine is not configured")
    return engine


def get_entitlement_context(request: Request) -> UserEntitlementContext:
    context = getattr(request.state, "entitlement_context", None)
    if not isinstance(context, UserEntitlementContext):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "UNAUTHENTICATED", "message": "Missing entitlement context"},
        )
    return context


def _denial_exception(decision: Decision, category: str, feature: str) -> HTTPException:
    outcome = AccessGuard.outcome_for(decision)

    if outcome.action is GuardAction.BILLING_PROMPT:
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"error": "SUBSCRIPTION_INACTIVE", "message": outcome.message},
        )
    if outcome.action is GuardAction.UPGRADE_PROMPT:
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "FEATURE_DENIED",
                "message": outcome.message,
                "category": category,
                "feature": feature,
                "available_in_plan": outcome.available_in_plan.value if outcome.available_in_plan else None,
            },
        )
    if outcome.action is GuardAction.SERVICE_UNAVAILABLE:
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": UsageStorageError.error_code,
                "message": outcome.message,
                "limit_name": decision.limit_name,
            },
        )
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "error": "QUOTA_EXCEEDED",
            "message": outcome.message,
            "limit_name": decision.limit_name,
            "current": decision.current,
            "max": decision.max_allowed,
        },
    )


def require_feature(
    category: str,
    feature: str,
    limit_name: Optional[str] = None,
) -> Callable:
    """
    Dependency factory guarding a route behind one feature.

    When limit_name is given, an allowed request consumes one unit of quota.
    Returns the Decision when allowed; raises 402/429/503 otherwise.
    """

    def check_feature(
        context: UserEntitlementContext = Depends(get_entitlement_context),
        engine: EntitlementEngine = Depends(get_engine),
    ) -> Decision:
        decision = engine.evaluate(context, category, feature, limit_name=limit_name)
        if decision.is_allowed:
            return decision
        logger.warning(
            "%s.%s access denied",
            category,
            feature,
            extra={"user_id": context.user_id, "outcome": decision.outcome.value},
        )
        raise _denial_exception(decision, category, feature)

    return check_feature


def create_entitlements_router(prefix: str = "/entitlements") -> APIRouter:
    """Read-only entitlement endpoints. Never consume quota."""
    router = APIRouter(prefix=prefix, tags=["entitlements"])

    @router.get("/limits/{limit_name}", response_model=UsageSnapshotResponse)
    def get_limit_usage(
        limit_name: str,
        context: UserEntitlementContext = Depends(get_entitlement_context),
        engine: EntitlementEngine = Depends(get_engine),
    ) -> UsageSnapshotResponse:
        try:
            snapshot = engine.check_limit(context, limit_name)
        except UnknownLimitError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict()) from e
        except UsageStorageError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e
        return UsageSnapshotResponse(
            limit_name=snapshot.limit_name,
            current=snapshot.current,
            max=snapshot.max_allowed,
            remaining=snapshot.remaining,
            percentage=snapshot.percentage,
            is_within_limit=snapshot.is_within_limit,
            period_key=snapshot.period_key,
        )

    @router.get("/{category}/{feature}", response_model=DecisionResponse)
    def get_feature_decision(
        category: str,
        feature: str,
        context: UserEntitlementContext = Depends(get_entitlement_context),
        engine: EntitlementEngine = Depends(get_engine),
    ) -> DecisionResponse:
        decision = engine.evaluate(context, category, feature)
        outcome = AccessGuard.outcome_for(decision)
        return DecisionResponse(
            outcome=decision.outcome.value,
            allowed=decision.is_allowed,
            action=outcome.action.value,
            message=outcome.message,
            available_in_plan=outcome.available_in_plan.value if outcome.available_in_plan else None,
            decision=decision.to_dict(),
        )

    return router
