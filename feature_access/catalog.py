from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Union

from .categories import (
    DEFAULT_LIMIT_PERIODS,
    FEATURE_SCHEMA,
    FeatureCategory,
    LimitName,
    PlanTier,
    QuotaPeriod,
    parse_category,
    parse_limit,
    parse_plan_tier,
)
from .errors import CatalogSchemaError, UnknownLimitError, UnknownPlanError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    """Immutable feature matrix and limits for one subscription tier."""

    plan_id: PlanTier
    features: Mapping[FeatureCategory, Mapping[str, bool]]
    limits: Mapping[LimitName, int]

    def __post_init__(self) -> None:
        frozen_features = {
            category: MappingProxyType(dict(flags))
            for category, flags in self.features.items()
        }
        object.__setattr__(self, "features", MappingProxyType(frozen_features))
        object.__setattr__(self, "limits", MappingProxyType(dict(self.limits)))

    @property
    def rank(self) -> int:
        return self.plan_id.rank

    def at_least(self, other: Union["Plan", PlanTier]) -> bool:
        return self.rank >= other.rank


class PlanCatalog:
    """
    Authoritative, read-only source of plans, features and limits.

    Built once at process start (``from_file``) and injected into the engine.
    Construction validates structural parity across all plans, so a catalog
    instance is always complete.
    """

    def __init__(
        self,
        plans: Mapping[PlanTier, Plan],
        limit_periods: Optional[Mapping[LimitName, QuotaPeriod]] = None,
    ) -> None:
        missing = [tier.value for tier in PlanTier if tier not in plans]
        if missing:
            raise CatalogSchemaError(f"catalog is missing plans: {', '.join(missing)}")
        self._plans: Mapping[PlanTier, Plan] = MappingProxyType(dict(plans))
        periods = dict(DEFAULT_LIMIT_PERIODS)
        periods.update(limit_periods or {})
        self._limit_periods: Mapping[LimitName, QuotaPeriod] = MappingProxyType(periods)

    @classmethod
    def from_file(cls, config_path: Union[str, Path] = "config/plans.json") -> "PlanCatalog":
        path = Path(config_path)
        try:
            with path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise CatalogSchemaError(f"cannot read plan catalog {path}: {exc}") from exc
        catalog = cls.from_dict(raw)
        logger.info("Loaded plan catalog", extra={"path": str(path), "plans": len(catalog._plans)})
        return catalog

    @classmethod
    def from_dict(cls, raw: object) -> "PlanCatalog":
        if not isinstance(raw, dict):
            raise CatalogSchemaError("plan catalog must contain a top-level object")

        plans_raw = raw.get("plans")
        if not isinstance(plans_raw, dict):
            raise CatalogSchemaError("plan catalog must include an object field named 'plans'")

        plans: Dict[PlanTier, Plan] = {}
        for plan_key, plan_data in plans_raw.items():
            tier = parse_plan_tier(plan_key) if isinstance(plan_key, str) else None
            if tier is None:
                raise CatalogSchemaError(f"unknown plan in catalog: {plan_key!r}", plan_id=str(plan_key))
            if tier in plans:
                raise CatalogSchemaError(f"plan defined twice: {tier.value}", plan_id=tier.value)
            plans[tier] = _parse_plan(tier, plan_data)

        return cls(plans, limit_periods=_parse_limit_periods(raw.get("limit_periods", {})))

    def get_plan(self, plan_id: Union[PlanTier, str]) -> Plan:
        tier = parse_plan_tier(plan_id)
        if tier is None:
            raise UnknownPlanError(str(plan_id))
        return self._plans[tier]

    def plans(self) -> List[Plan]:
        """All plans, cheapest first."""
        return sorted(self._plans.values(), key=lambda p: p.rank)

    def is_feature_enabled(
        self,
        plan: Plan,
        category: Union[FeatureCategory, str],
        feature_name: str,
    ) -> bool:
        """False when the category or feature is absent; never raises."""
        parsed = parse_category(category)
        normalized_feature = str(feature_name).strip()
        if parsed is None or normalized_feature not in FEATURE_SCHEMA[parsed]:
            logger.warning(
                "Feature lookup outside catalog schema",
                extra={
                    "plan_id": plan.plan_id.value,
                    "category": str(category),
                    "feature": normalized_feature,
                },
            )
            return False
        flags = plan.features.get(parsed)
        if flags is None:
            return False
        return flags.get(normalized_feature) is True

    def get_limit(self, plan: Plan, limit_name: Union[LimitName, str]) -> int:
        """-1 means unlimited."""
        parsed = parse_limit(limit_name)
        if parsed is None:
            raise UnknownLimitError(str(limit_name))
        return plan.limits[parsed]

    def limit_period(self, limit_name: Union[LimitName, str]) -> QuotaPeriod:
        parsed = parse_limit(limit_name)
        if parsed is None:
            raise UnknownLimitError(str(limit_name))
        return self._limit_periods[parsed]

    def upgrade_options(self, plan: Plan) -> List[Plan]:
        return [candidate for candidate in self.plans() if candidate.rank > plan.rank]

    def lowest_plan_with_feature(
        self,
        category: Union[FeatureCategory, str],
        feature_name: str,
        above: Optional[Plan] = None,
    ) -> Optional[Plan]:
        candidates = self.upgrade_options(above) if above is not None else self.plans()
        for candidate in candidates:
            if self.is_feature_enabled(candidate, category, feature_name):
                return candidate
        return None

    def can_upgrade_feature(
        self,
        current: Plan,
        target: Plan,
        category: Union[FeatureCategory, str],
        feature_name: str,
    ) -> bool:
        return (
            not self.is_feature_enabled(current, category, feature_name)
            and self.is_feature_enabled(target, category, feature_name)
        )


def _parse_plan(tier: PlanTier, plan_data: object) -> Plan:
    if not isinstance(plan_data, dict):
        raise CatalogSchemaError(f"plan '{tier.value}' must be an object", plan_id=tier.value)

    features_raw = plan_data.get("features")
    if not isinstance(features_raw, dict):
        raise CatalogSchemaError(f"plan '{tier.value}' features must be an object", plan_id=tier.value)

    extra_categories = set(features_raw) - {c.value for c in FeatureCategory}
    if extra_categories:
        raise CatalogSchemaError(
            f"plan '{tier.value}' has unknown categories: {sorted(extra_categories)}",
            plan_id=tier.value,
        )

    features: Dict[FeatureCategory, Dict[str, bool]] = {}
    for category, expected in FEATURE_SCHEMA.items():
        flags = features_raw.get(category.value)
        if not isinstance(flags, dict):
            raise CatalogSchemaError(
                f"plan '{tier.value}' is missing category '{category.value}'",
                plan_id=tier.value,
            )
        if set(flags) != expected:
            missing = sorted(expected - set(flags))
            extra = sorted(set(flags) - expected)
            raise CatalogSchemaError(
                f"plan '{tier.value}' category '{category.value}' does not match schema "
                f"(missing={missing}, unknown={extra})",
                plan_id=tier.value,
            )
        for feature_name, enabled in flags.items():
            if not isinstance(enabled, bool):
                raise CatalogSchemaError(
                    f"plan '{tier.value}' feature '{category.value}.{feature_name}' must be a boolean",
                    plan_id=tier.value,
                )
        features[category] = dict(flags)

    limits_raw = plan_data.get("limits")
    if not isinstance(limits_raw, dict):
        raise CatalogSchemaError(f"plan '{tier.value}' limits must be an object", plan_id=tier.value)

    expected_limits = {limit.value for limit in LimitName}
    if set(limits_raw) != expected_limits:
        missing = sorted(expected_limits - set(limits_raw))
        extra = sorted(set(limits_raw) - expected_limits)
        raise CatalogSchemaError(
            f"plan '{tier.value}' limits do not match schema (missing={missing}, unknown={extra})",
            plan_id=tier.value,
        )

    limits: Dict[LimitName, int] = {}
    for limit_key, value in limits_raw.items():
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int) or value < -1:
            raise CatalogSchemaError(
                f"plan '{tier.value}' limit '{limit_key}' must be an integer >= -1",
                plan_id=tier.value,
            )
        limits[LimitName(limit_key)] = value

    return Plan(plan_id=tier, features=features, limits=limits)


def _parse_limit_periods(raw: object) -> Dict[LimitName, QuotaPeriod]:
    if not isinstance(raw, dict):
        raise CatalogSchemaError("'limit_periods' must be an object")
    periods: Dict[LimitName, QuotaPeriod] = {}
    for limit_key, period_value in raw.items():
        limit = parse_limit(limit_key)
        if limit is None:
            raise CatalogSchemaError(f"'limit_periods' names unknown limit: {limit_key!r}")
        try:
            periods[limit] = QuotaPeriod(period_value)
        except ValueError:
            raise CatalogSchemaError(
                f"'limit_periods.{limit_key}' must be one of: monthly, lifetime"
            ) from None
    return periods
