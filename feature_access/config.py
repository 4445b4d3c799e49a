"""
Runtime configuration for the entitlement engine.

Configuration (environment variables):
- PLAN_CATALOG_PATH:        Plan catalog JSON (default: "config/plans.json")
- USAGE_STORE_BACKEND:      memory | redis | sql (default: "memory")
- REDIS_URL:                Redis connection URL (default: "redis://localhost:6379/0")
- USAGE_DATABASE_URL:       SQLAlchemy URL for the sql backend (default: "sqlite:///usage.db")
- USAGE_KEY_TTL_SECONDS:    Redis key TTL for usage counters (default: 100 days)
- USAGE_RETENTION_PERIODS:  Monthly periods kept by the retention job (default: "3")
"""

import os
from dataclasses import dataclass

USAGE_STORE_BACKENDS = ("memory", "redis", "sql")
DEFAULT_USAGE_KEY_TTL_SECONDS = 100 * 24 * 3600


def _get_plan_catalog_path() -> str:
    return os.getenv("PLAN_CATALOG_PATH", "config/plans.json")


def _get_usage_store_backend() -> str:
    backend = os.getenv("USAGE_STORE_BACKEND", "memory").strip().lower()
    if backend not in USAGE_STORE_BACKENDS:
        raise ValueError(
            f"USAGE_STORE_BACKEND must be one of: {', '.join(USAGE_STORE_BACKENDS)}"
        )
    return backend


def _get_redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


def _get_usage_database_url() -> str:
    return os.getenv("USAGE_DATABASE_URL", "sqlite:///usage.db")


def _get_usage_key_ttl_seconds() -> int:
    return int(os.getenv("USAGE_KEY_TTL_SECONDS", str(DEFAULT_USAGE_KEY_TTL_SECONDS)))


def _get_usage_retention_periods() -> int:
    return int(os.getenv("USAGE_RETENTION_PERIODS", "3"))


@dataclass(frozen=True)
class Settings:
    plan_catalog_path: str = "config/plans.json"
    usage_store_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    usage_database_url: str = "sqlite:///usage.db"
    usage_key_ttl_seconds: int = DEFAULT_USAGE_KEY_TTL_SECONDS
    usage_retention_periods: int = 3


def load_settings() -> Settings:
    """Read settings from the environment. Raises ValueError on bad values."""
    return Settings(
        plan_catalog_path=_get_plan_catalog_path(),
        usage_store_backend=_get_usage_store_backend(),
        redis_url=_get_redis_url(),
        usage_database_url=_get_usage_database_url(),
        usage_key_ttl_seconds=_get_usage_key_ttl_seconds(),
        usage_retention_periods=_get_usage_retention_periods(),
    )
