from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .errors import ConfigurationError, StoreError

# A limit of None means the tier has no ceiling for the feature.
UNLIMITED = None
Limit = Optional[int]


def is_unlimited(limit: Limit) -> bool:
    return limit is UNLIMITED


class ResetPeriod(str, enum.Enum):
    """Cadence at which a feature's usage counter starts over."""

    NEVER = "never"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Tier(str, enum.Enum):
    """Subscription level as reported by the billing side."""

    FREE = "free"
    PAID = "paid"


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class FeaturePolicy:
    """Tier-dependent limits and reset cadence for one gated feature."""

    feature_id: str
    free_limit: int
    paid_limit: Limit
    reset_period: ResetPeriod
    description: str = ""
    upgrade_message: str = ""
    fail_open: bool = False

    def __post_init__(self) -> None:
        feature_id = str(self.feature_id).strip()
        if not feature_id:
            raise ConfigurationError("feature_id is required")
        if isinstance(self.free_limit, bool) or not isinstance(self.free_limit, int):
            raise ConfigurationError(
                f"free_limit for '{feature_id}' must be an integer", feature_id=feature_id
            )
        if self.free_limit < 0:
            raise ConfigurationError(
                f"free_limit for '{feature_id}' must be non-negative", feature_id=feature_id
            )
        if not is_unlimited(self.paid_limit):
            if isinstance(self.paid_limit, bool) or not isinstance(self.paid_limit, int):
                raise ConfigurationError(
                    f"paid_limit for '{feature_id}' must be an integer or unlimited",
                    feature_id=feature_id,
                )
            if self.paid_limit < self.free_limit:
                raise ConfigurationError(
                    f"paid_limit for '{feature_id}' is below free_limit", feature_id=feature_id
                )
        try:
            reset_period = ResetPeriod(self.reset_period)
        except ValueError as exc:
            raise ConfigurationError(
                f"unknown reset_period {self.reset_period!r} for '{feature_id}'",
                feature_id=feature_id,
            ) from exc
        object.__setattr__(self, "feature_id", feature_id)
        object.__setattr__(self, "reset_period", reset_period)

    def limit_for(self, tier: Tier) -> Limit:
        if tier == Tier.PAID:
            return self.paid_limit
        return self.free_limit


@dataclass(frozen=True)
class UsageRecord:
    """Durable per-(user, feature) counter within the current window."""

    user_id: str
    feature_id: str
    count: int
    window_start: datetime
    reset_period: ResetPeriod

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        if self.count < 0:
            raise ValueError("count must be non-negative")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "window_start", ensure_utc(self.window_start))
        object.__setattr__(self, "reset_period", ResetPeriod(self.reset_period))

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "feature_id": self.feature_id,
            "count": self.count,
            "window_start": self.window_start.isoformat(),
            "reset_period": self.reset_period.value,
        }


@dataclass(frozen=True)
class CachedUsage:
    """Device-local snapshot of a UsageRecord. Never authoritative."""

    record: UsageRecord
    fetched_at: datetime
    stale: bool = False


@dataclass(frozen=True)
class IncrementResult:
    accepted: bool
    new_count: int


@dataclass(frozen=True)
class ConsumeOutcome:
    """Result of a consume attempt. `error` is set when the store could not confirm it."""

    accepted: bool
    error: Optional[StoreError] = None

    @property
    def store_failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class EntitlementDecision:
    """Outcome of an entitlement check, for display and gating."""

    allowed: bool
    remaining: Limit
    limit: Limit
    reset_at: Optional[datetime]
    tier: Tier = Tier.FREE
    stale: bool = False
    upgrade_message: str = field(default="", compare=False)

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.limit)

    @property
    def usage_percentage(self) -> int:
        """Share of the quota already used, 0-100. Unlimited tiers always read 0."""
        if is_unlimited(self.limit) or is_unlimited(self.remaining):
            return 0
        if self.limit == 0:
            return 100
        used = self.limit - self.remaining
        # rounds half up
        return min(100, (used * 200 + self.limit) // (2 * self.limit))

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": "unlimited" if is_unlimited(self.remaining) else self.remaining,
            "limit": "unlimited" if is_unlimited(self.limit) else self.limit,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "tier": self.tier.value,
            "stale": self.stale,
            "usage_percentage": self.usage_percentage,
            "upgrade_message": self.upgrade_message if not self.allowed else "",
        }
