"""
Entitlement evaluation: super admin -> subscription -> plan -> quota.

The order is a policy contract:
1. Super admins are always allowed; nothing below runs.
2. An expired subscription is denied before any plan lookup.
3. A feature the plan does not enable is denied.
4. Quota is consumed only when the caller names a limit; read-only visibility
   checks never consume it.
5. Otherwise allowed.

Denials are returned as Decision values. Only configuration errors
(UnknownPlanError, UnknownLimitError) are raised. Usage storage failures fail
closed into a quota-exceeded decision.
"""

import logging
from typing import Optional, Union

from .admin import AdminOverride
from .alerts import emit_usage_storage_failure, record_deny_and_alert
from .catalog import Plan, PlanCatalog
from .categories import FeatureCategory, LimitName, is_known_feature
from .config import Settings, load_settings
from .errors import UsageStorageError
from .models import (
    Decision,
    SubscriptionStatus,
    UsageSnapshot,
    UserEntitlementContext,
    normalize_limit_name,
)
from .stores import build_usage_store
from .usage import UNLIMITED, UsageTracker

logger = logging.getLogger(__name__)


class EntitlementEngine:
    """The single decision point every consumer calls."""

    def __init__(
        self,
        catalog: PlanCatalog,
        usage_tracker: UsageTracker,
        admin_override: Optional[AdminOverride] = None,
    ) -> None:
        self.catalog = catalog
        self.usage_tracker = usage_tracker
        self.admin_override = admin_override or AdminOverride()

    def evaluate(
        self,
        context: UserEntitlementContext,
        category: Union[FeatureCategory, str],
        feature_name: str,
        limit_name: Optional[Union[LimitName, str]] = None,
    ) -> Decision:
        if self.admin_override.applies(context):
            return Decision.allowed()

        if context.subscription_status is SubscriptionStatus.EXPIRED:
            self._log_denial(context, category, feature_name, "subscription_inactive")
            return Decision.denied_by_subscription_inactive()

        plan = self.catalog.get_plan(context.plan_id)
        if not self.catalog.is_feature_enabled(plan, category, feature_name):
            required = None
            # unknown names were already logged by the lookup above
            if is_known_feature(category, feature_name):
                required = self.catalog.lowest_plan_with_feature(category, feature_name, above=plan)
            self._log_denial(context, category, feature_name, "plan")
            return Decision.denied_by_plan(required.plan_id if required else None)

        if limit_name is not None:
            return self._consume_quota(context, plan, category, feature_name, limit_name)

        return Decision.allowed()

    def evaluate_request(
        self,
        user_id: str,
        plan_id: str,
        is_super_admin: bool,
        subscription_status: Union[SubscriptionStatus, str],
        category: Union[FeatureCategory, str],
        feature_name: str,
        limit_name: Optional[Union[LimitName, str]] = None,
    ) -> Decision:
        """Flat input form of evaluate()."""
        context = UserEntitlementContext(
            user_id=user_id,
            plan_id=plan_id,
            is_super_admin=is_super_admin,
            subscription_status=subscription_status,
        )
        return self.evaluate(context, category, feature_name, limit_name=limit_name)

    def check_limit(
        self,
        context: UserEntitlementContext,
        limit_name: Union[LimitName, str],
    ) -> UsageSnapshot:
        """Read-only quota view. Never consumes quota."""
        if self.admin_override.applies(context):
            return UsageSnapshot(
                limit_name=normalize_limit_name(limit_name),
                current=0,
                max_allowed=UNLIMITED,
                period_key=self.usage_tracker.current_period_key(limit_name),
            )
        plan = self.catalog.get_plan(context.plan_id)
        max_allowed = self.catalog.get_limit(plan, limit_name)
        return self.usage_tracker.usage_snapshot(context.user_id, limit_name, max_allowed)

    def _consume_quota(
        self,
        context: UserEntitlementContext,
        plan: Plan,
        category: Union[FeatureCategory, str],
        feature_name: str,
        limit_name: Union[LimitName, str],
    ) -> Decision:
        max_allowed = self.catalog.get_limit(plan, limit_name)
        try:
            result = self.usage_tracker.check_and_increment(context.user_id, limit_name, max_allowed)
        except UsageStorageError as exc:
            normalized_limit = normalize_limit_name(limit_name)
            emit_usage_storage_failure(context.user_id, normalized_limit, str(exc))
            return Decision.quota_unverifiable(normalized_limit, max_allowed)

        if not result.granted:
            self._log_denial(context, category, feature_name, "quota")
            return Decision.quota_exceeded(result.limit_name, result.count, result.max_allowed)
        return Decision.allowed()

    @staticmethod
    def _log_denial(
        context: UserEntitlementContext,
        category: Union[FeatureCategory, str],
        feature_name: str,
        reason: str,
    ) -> None:
        category_value = str(getattr(category, "value", category))
        logger.info(
            "Entitlement denied",
            extra={
                "user_id": context.user_id,
                "plan_id": str(getattr(context.plan_id, "value", context.plan_id)),
                "category": category_value,
                "feature": feature_name,
                "reason": reason,
            },
        )
        record_deny_and_alert(context.user_id, category_value, feature_name)


def build_engine(settings: Optional[Settings] = None) -> EntitlementEngine:
    """
    Wire catalog, usage store, tracker and engine once at startup.

    A broken catalog raises CatalogSchemaError here, before any request is served.
    """
    settings = settings or load_settings()
    catalog = PlanCatalog.from_file(settings.plan_catalog_path)
    store = build_usage_store(settings)
    tracker = UsageTracker(store, limit_periods={
        limit: catalog.limit_period(limit) for limit in LimitName
    })
    logger.info(
        "Entitlement engine ready",
        extra={"usage_store_backend": settings.usage_store_backend},
    )
    return EntitlementEngine(catalog, tracker)
