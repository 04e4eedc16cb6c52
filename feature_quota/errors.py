"""
Feature quota error hierarchy.

Provides:
- FeatureQuotaError: base for all quota/entitlement failures
- ConfigurationError: unknown feature id or malformed policy (fatal)
- OracleUnavailableError: subscription tier lookup failed
- StoreError / StoreUnavailableError / StoreTimeoutError: durable store failures
- CacheCorruptError: malformed local cache entry
- InvalidUserIdError: blank or missing user id (caller error, also a ValueError)
"""

from typing import Optional


class FeatureQuotaError(Exception):
    """Base exception for quota-related failures."""

    error_code = "FEATURE_QUOTA_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class ConfigurationError(FeatureQuotaError):
    """
    Raised for unknown feature ids and malformed policies.

    Never degraded silently: this is a developer error, surfaced loudly.
    """

    error_code = "QUOTA_CONFIGURATION_ERROR"

    def __init__(self, message: str, feature_id: Optional[str] = None):
        self.feature_id = feature_id
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.feature_id is not None:
            d["feature_id"] = self.feature_id
        return d


class InvalidUserIdError(FeatureQuotaError, ValueError):
    """Raised when a call arrives without a usable user id."""

    error_code = "INVALID_USER_ID"

    def __init__(self, message: str = "user_id is required"):
        super().__init__(message)


class OracleUnavailableError(FeatureQuotaError):
    """Raised when the subscription tier cannot be resolved."""

    error_code = "TIER_ORACLE_UNAVAILABLE"

    def __init__(self, user_id: str, detail: str, cause: Optional[Exception] = None):
        self.user_id = user_id
        self.detail = detail
        self.cause = cause
        super().__init__(f"Tier lookup failed for {user_id}: {detail}")


class StoreError(FeatureQuotaError):
    """Base for durable usage store failures."""

    error_code = "USAGE_STORE_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Usage store {operation} failed: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.detail,
            "operation": self.operation,
        }


class StoreUnavailableError(StoreError):
    """The durable store rejected or could not serve the request."""

    error_code = "USAGE_STORE_UNAVAILABLE"


class StoreTimeoutError(StoreError):
    """The durable store did not answer within the configured timeout."""

    error_code = "USAGE_STORE_TIMEOUT"


class CacheCorruptError(FeatureQuotaError):
    """A cached usage entry could not be decoded."""

    error_code = "USAGE_CACHE_CORRUPT"

    def __init__(self, key: str, detail: str):
        self.key = key
        self.detail = detail
        super().__init__(f"Corrupt usage cache entry {key}: {detail}")
