"""
Entitlement error hierarchy.

Provides:
- EntitlementError: base for all entitlement failures
- CatalogSchemaError: plan catalog failed validation at load time
- UnknownPlanError: plan id is not one of the canonical plans
- UnknownLimitError: limit name is not part of the catalog schema
- UsageStorageError: usage backend failed (callers must fail closed)

Denials and exceeded quotas are not errors; they are Decision values.
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class CatalogSchemaError(EntitlementError):
    """
    Raised when the plan catalog does not match the schema.

    Startup-class failure: the catalog must not be partially loaded.
    """

    error_code = "CATALOG_SCHEMA_INVALID"

    def __init__(self, message: str, plan_id: Optional[str] = None):
        self.plan_id = plan_id
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.plan_id is not None:
            d["plan_id"] = self.plan_id
        return d


class UnknownPlanError(EntitlementError):
    """Raised when a plan id is not one of the canonical plans."""

    error_code = "UNKNOWN_PLAN"

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"unknown plan: {plan_id!r}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "plan_id": self.plan_id}


class UnknownLimitError(EntitlementError):
    """Raised when a limit name is not defined in the catalog schema at all."""

    error_code = "UNKNOWN_LIMIT"

    def __init__(self, limit_name: str):
        self.limit_name = limit_name
        super().__init__(f"unknown limit: {limit_name!r}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "limit_name": self.limit_name}


class UsageStorageError(EntitlementError):
    """
    Raised when the usage backend cannot be read or written.

    Carries the underlying exception so operators can see the cause; the
    engine converts it into a fail-closed decision.
    """

    error_code = "USAGE_UNAVAILABLE_FAIL_CLOSED"

    def __init__(self, detail: str, cause: Optional[Exception] = None):
        self.detail = detail
        self.cause = cause
        super().__init__(f"Usage storage unavailable: {detail}")
