"""
Super admin bypass for entitlement evaluation.

SECURITY CRITICAL:
- The bypass applies only to contexts with an explicit is_super_admin=True flag
- Session data grants it only through the "super_admin" role; "admin" does not
- The flag comes from already-authenticated session data, never from request input
"""

import logging
from typing import Any, Mapping

from .categories import PlanTier
from .models import SubscriptionStatus, UserEntitlementContext

logger = logging.getLogger(__name__)

SUPER_ADMIN_ROLES = frozenset({"super_admin"})

# Session statuses outside the engine vocabulary. A cancelled subscription is
# inactive; "free" marks a user who never subscribed, which never lapses.
SESSION_STATUS_ALIASES = {
    "cancelled": SubscriptionStatus.EXPIRED,
    "canceled": SubscriptionStatus.EXPIRED,
    "free": SubscriptionStatus.ACTIVE,
}


class AdminOverride:
    """Short-circuits evaluation to Allowed for super admins."""

    def applies(self, context: UserEntitlementContext) -> bool:
        if context.is_super_admin is not True:
            return False
        logger.debug("Super admin bypass applied", extra={"user_id": context.user_id})
        return True


def is_super_admin_role(role: Any) -> bool:
    return isinstance(role, str) and role.strip().lower() in SUPER_ADMIN_ROLES


def session_subscription_status(status: Any) -> Any:
    if status is None or status == "":
        return SubscriptionStatus.ACTIVE
    if isinstance(status, str):
        return SESSION_STATUS_ALIASES.get(status.strip().lower(), status)
    return status


def context_from_session(session: Mapping[str, Any]) -> UserEntitlementContext:
    """
    Build an entitlement context from authenticated session data.

    Expected keys: id, subscriptionPlan, subscriptionStatus, isSuperAdmin, role.
    A missing plan means the free plan and a missing status means active.
    "cancelled" maps to expired and "free" to active; other unknown statuses
    raise ValueError. The isSuperAdmin flag is distinct from a plain admin
    flag (isAdmin), which grants nothing here.
    """
    user_id = session.get("id")
    if user_id is None or not str(user_id).strip():
        raise ValueError("session is missing the user id")

    is_super_admin = session.get("isSuperAdmin") is True or is_super_admin_role(session.get("role"))

    return UserEntitlementContext(
        user_id=str(user_id),
        plan_id=session.get("subscriptionPlan") or PlanTier.FREE,
        is_super_admin=is_super_admin,
        subscription_status=session_subscription_status(session.get("subscriptionStatus")),
    )
