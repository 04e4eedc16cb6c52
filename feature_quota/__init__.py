"""
Feature entitlement and usage-metering engine.

This package provides:
- FeatureCatalog: gated features and their tier limits, from features.json
- window helpers: when a counting window rolls over
- UsageStore: durable counters with an atomic conditional increment (SQLAlchemy)
- UsageCache: Redis-backed local mirror of recent usage, in-memory fallback
- UsageReconciler: cache/store convergence and window resets
- EntitlementEvaluator: evaluate / consume / get_usage
- FastAPI router and require_quota dependency (feature_quota.api)

Free-tier fallback: an unreachable subscription oracle is treated as the
free tier, never as paid.
"""

from feature_quota.cache import UsageCache
from feature_quota.catalog import FeatureCatalog, normalize_feature_id
from feature_quota.errors import (
    CacheCorruptError,
    ConfigurationError,
    FeatureQuotaError,
    InvalidUserIdError,
    OracleUnavailableError,
    StoreError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from feature_quota.models import (
    UNLIMITED,
    CachedUsage,
    ConsumeOutcome,
    EntitlementDecision,
    FeaturePolicy,
    IncrementResult,
    ResetPeriod,
    Tier,
    UsageRecord,
    is_unlimited,
)
from feature_quota.reconciler import SweepResult, UsageReconciler
from feature_quota.service import EntitlementEvaluator, consume, evaluate, get_usage
from feature_quota.settings import QuotaSettings, load_settings
from feature_quota.store import UsageStore, create_store_engine
from feature_quota.window import needs_reset, next_window_start

__all__ = [
    # Catalog
    "FeatureCatalog",
    "FeaturePolicy",
    "normalize_feature_id",
    # Models
    "UNLIMITED",
    "is_unlimited",
    "ResetPeriod",
    "Tier",
    "UsageRecord",
    "CachedUsage",
    "IncrementResult",
    "EntitlementDecision",
    "ConsumeOutcome",
    # Window
    "needs_reset",
    "next_window_start",
    # Storage
    "UsageStore",
    "create_store_engine",
    "UsageCache",
    "UsageReconciler",
    "SweepResult",
    # Service
    "EntitlementEvaluator",
    "evaluate",
    "consume",
    "get_usage",
    # Settings
    "QuotaSettings",
    "load_settings",
    # Errors
    "FeatureQuotaError",
    "ConfigurationError",
    "OracleUnavailableError",
    "StoreError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "CacheCorruptError",
    "InvalidUserIdError",
]
