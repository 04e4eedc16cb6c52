"""
Runtime configuration for the feature quota engine.

Configuration (environment variables):
- DATABASE_URL:                     Durable usage store (default: "sqlite:///./feature_usage.db")
- REDIS_URL:                        Usage cache; in-memory cache when unset or unreachable
- USAGE_CACHE_TTL_SECONDS:          Cache entry lifetime (default: "300")
- USAGE_CACHE_STALE_AFTER_SECONDS:  Age after which a cached entry is re-read (default: "60")
- USAGE_STORE_TIMEOUT_SECONDS:      Timeout for store calls (default: "2")
- USAGE_TRACK_UNLIMITED:            Count usage of unlimited features for analytics (default: "false")
- FEATURE_CATALOG_PATH:             Alternate features.json
- USAGE_RECONCILE_INTERVAL_SECONDS: Reset sweep interval (default: "3600")
- USAGE_RECONCILE_DRY_RUN:          Count elapsed windows without resetting (default: "true")
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite:///./feature_usage.db"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class QuotaSettings:
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = 300
    cache_stale_after_seconds: int = 60
    store_timeout_seconds: float = 2.0
    track_unlimited_usage: bool = False
    catalog_path: Optional[str] = None
    reconcile_interval_seconds: int = 3600
    reconcile_dry_run: bool = True


def load_settings() -> QuotaSettings:
    """Build settings from the environment."""
    database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return QuotaSettings(
        database_url=database_url,
        redis_url=os.getenv("REDIS_URL") or None,
        cache_ttl_seconds=int(os.getenv("USAGE_CACHE_TTL_SECONDS", "300")),
        cache_stale_after_seconds=int(os.getenv("USAGE_CACHE_STALE_AFTER_SECONDS", "60")),
        store_timeout_seconds=float(os.getenv("USAGE_STORE_TIMEOUT_SECONDS", "2")),
        track_unlimited_usage=_env_bool("USAGE_TRACK_UNLIMITED", "false"),
        catalog_path=os.getenv("FEATURE_CATALOG_PATH") or None,
        reconcile_interval_seconds=int(os.getenv("USAGE_RECONCILE_INTERVAL_SECONDS", "3600")),
        reconcile_dry_run=_env_bool("USAGE_RECONCILE_DRY_RUN", "true"),
    )
