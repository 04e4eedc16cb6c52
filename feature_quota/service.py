from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Optional, Union

from .cache import UsageCache
from .catalog import FeatureCatalog
from .errors import InvalidUserIdError, OracleUnavailableError, StoreError
from .models import (
    UNLIMITED,
    ConsumeOutcome,
    EntitlementDecision,
    FeaturePolicy,
    Limit,
    Tier,
    UsageRecord,
    ensure_utc,
    is_unlimited,
)
from .reconciler import UsageReconciler
from .settings import QuotaSettings, load_settings
from .store import UsageStore
from .window import current_window_start, needs_reset, next_window_start, window_reset_at

logger = logging.getLogger(__name__)

TierLike = Union[Tier, str, bool]

_PAID_ALIASES = {"paid", "plus", "premium"}
_FREE_ALIASES = {"free", "basic"}


def _require_user_id(user_id: str) -> str:
    normalized = str(user_id).strip() if user_id is not None else ""
    if not normalized:
        raise InvalidUserIdError()
    return normalized


def normalize_tier(user_id: str, raw: TierLike) -> Tier:
    """Map whatever the billing side reports onto a Tier."""
    if isinstance(raw, Tier):
        return raw
    if isinstance(raw, bool):
        return Tier.PAID if raw else Tier.FREE
    if isinstance(raw, str):
        value = raw.strip().lower()
        if value.startswith("plan_"):
            value = value[len("plan_"):]
        if value in _PAID_ALIASES:
            return Tier.PAID
        if value in _FREE_ALIASES:
            return Tier.FREE
    raise OracleUnavailableError(user_id, f"unrecognised tier {raw!r}")


class EntitlementEvaluator:
    """
    Decides whether a user may use a gated feature and meters each use.

    evaluate() is read-only and may answer from the cache; consume() always
    goes to the durable store and is the only path that spends quota.
    """

    def __init__(
        self,
        *,
        catalog: FeatureCatalog,
        store: UsageStore,
        cache: Optional[UsageCache] = None,
        tier_resolver: Optional[Callable[[str], TierLike]] = None,
        track_unlimited_usage: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
        audit_sink: Optional[Callable[[str, dict], None]] = None,
        support_alert_sink: Optional[Callable[[str, dict], None]] = None,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.cache = cache or UsageCache()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.reconciler = UsageReconciler(store, self.cache, clock=self._clock)
        self._tier_resolver = tier_resolver or (lambda user_id: Tier.FREE)
        self._track_unlimited_usage = track_unlimited_usage
        self._audit_sink = audit_sink or (lambda event, payload: None)
        self._support_alert_sink = support_alert_sink or (lambda code, payload: None)

    @classmethod
    def from_settings(
        cls,
        settings: QuotaSettings,
        *,
        tier_resolver: Optional[Callable[[str], TierLike]] = None,
    ) -> "EntitlementEvaluator":
        store = UsageStore.from_settings(settings)
        store.create_schema()
        return cls(
            catalog=FeatureCatalog(settings.catalog_path),
            store=store,
            cache=UsageCache(
                redis_url=settings.redis_url,
                ttl_seconds=settings.cache_ttl_seconds,
                stale_after_seconds=settings.cache_stale_after_seconds,
            ),
            tier_resolver=tier_resolver,
            track_unlimited_usage=settings.track_unlimited_usage,
        )

    # -- public API -------------------------------------------------------

    def evaluate(self, user_id: str, feature_id: str, *, now: Optional[datetime] = None) -> EntitlementDecision:
        """Report whether the feature is usable now and how much quota remains."""
        user_id = _require_user_id(user_id)
        policy = self.catalog.policy_for(feature_id)
        tier = self._resolve_tier(user_id)
        limit = policy.limit_for(tier)
        now = ensure_utc(now or self._clock())

        if is_unlimited(limit):
            return EntitlementDecision(
                allowed=True, remaining=UNLIMITED, limit=UNLIMITED, reset_at=None, tier=tier
            )
        if limit == 0:
            return self._decision(policy, tier, limit, count=0, reset_at=None)

        cached = self.cache.get(user_id, policy.feature_id)
        if cached is not None and not cached.stale:
            return self._decide(policy, tier, limit, cached.record, now)

        try:
            record = self.reconciler.refresh(user_id, policy.feature_id, cached)
        except StoreError as exc:
            self._report_store_failure("evaluate", user_id, policy, exc)
            if cached is not None:
                return self._decide(policy, tier, limit, cached.record, now, stale=True)
            allowed = policy.fail_open
            return EntitlementDecision(
                allowed=allowed,
                remaining=limit if allowed else 0,
                limit=limit,
                reset_at=None,
                tier=tier,
                stale=True,
                upgrade_message=policy.upgrade_message,
            )

        return self._decide(policy, tier, limit, record, now)

    def consume(self, user_id: str, feature_id: str, *, now: Optional[datetime] = None) -> bool:
        """
        Spend one unit of quota. Call immediately before performing the gated action.

        Returns False when the quota is exhausted or the store cannot confirm
        the increment; after a failure, re-evaluate before retrying.
        """
        return self.try_consume(user_id, feature_id, now=now).accepted

    def try_consume(self, user_id: str, feature_id: str, *, now: Optional[datetime] = None) -> ConsumeOutcome:
        """Like consume(), but tells an exhausted quota apart from a store failure."""
        user_id = _require_user_id(user_id)
        policy = self.catalog.policy_for(feature_id)
        tier = self._resolve_tier(user_id)
        limit = policy.limit_for(tier)
        now = ensure_utc(now or self._clock())

        if is_unlimited(limit):
            if self._track_unlimited_usage:
                self._record_unlimited_use(user_id, policy, now)
            return ConsumeOutcome(accepted=True)
        if limit == 0:
            self._report_denial(user_id, policy, tier, limit, count=0)
            return ConsumeOutcome(accepted=False)

        try:
            record = self.store.read(user_id, policy.feature_id)
            if record is not None:
                record = self.reconciler.reset_if_elapsed(
                    record, now=now, reset_period=policy.reset_period
                )
                window_start = record.window_start
                reset_period = record.reset_period
            else:
                window_start = current_window_start(now, policy.reset_period)
                reset_period = policy.reset_period

            result = self.store.conditional_increment(
                user_id,
                policy.feature_id,
                limit,
                window_start=window_start,
                reset_period=reset_period,
            )
        except StoreError as exc:
            self._report_store_failure("consume", user_id, policy, exc)
            return ConsumeOutcome(accepted=False, error=exc)

        if not result.accepted:
            self._report_denial(user_id, policy, tier, limit, count=result.new_count)

        # mirror the durable count, accepted or not
        self.cache.put(
            user_id,
            policy.feature_id,
            UsageRecord(
                user_id=user_id,
                feature_id=policy.feature_id,
                count=result.new_count,
                window_start=window_start,
                reset_period=reset_period,
            ),
        )
        return ConsumeOutcome(accepted=result.accepted)

    def get_usage(self, user_id: str, feature_id: str) -> Optional[UsageRecord]:
        """Durable record for diagnostics. Store failures propagate as StoreError."""
        user_id = _require_user_id(user_id)
        policy = self.catalog.policy_for(feature_id)
        cached = self.cache.get(user_id, policy.feature_id)
        return self.reconciler.refresh(user_id, policy.feature_id, cached)

    def handle_subscription_change(self, user_id: str) -> None:
        """Drop cached usage for every feature after a tier change. Counters are kept."""
        user_id = _require_user_id(user_id)
        for feature_id in sorted(self.catalog.feature_ids()):
            self.cache.invalidate(user_id, feature_id)

    # -- internals --------------------------------------------------------

    def _resolve_tier(self, user_id: str) -> Tier:
        try:
            return normalize_tier(user_id, self._tier_resolver(user_id))
        except Exception as exc:  # the oracle is external; never grant paid access on failure
            payload = {
                "user_id": user_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "error_code": OracleUnavailableError.error_code,
                "fallback_tier": Tier.FREE.value,
                "occurred_at": datetime.now(timezone.utc).isoformat(),
            }
            logger.warning("Subscription tier lookup failed - treating user as free tier", extra=payload)
            self._audit_sink("feature_quota.tier_fallback", payload)
            return Tier.FREE

    def _decide(
        self,
        policy: FeaturePolicy,
        tier: Tier,
        limit: int,
        record: Optional[UsageRecord],
        now: datetime,
        *,
        stale: bool = False,
    ) -> EntitlementDecision:
        if record is None:
            count = 0
            reset_at = next_window_start(now, policy.reset_period)
        elif needs_reset(now, record.window_start, record.reset_period):
            # Reported as a fresh window; the durable reset happens on the next consume().
            count = 0
            reset_at = next_window_start(now, record.reset_period)
        else:
            count = record.count
            reset_at = window_reset_at(record.window_start, record.reset_period)
        return self._decision(policy, tier, limit, count=count, reset_at=reset_at, stale=stale)

    @staticmethod
    def _decision(
        policy: FeaturePolicy,
        tier: Tier,
        limit: int,
        *,
        count: int,
        reset_at: Optional[datetime],
        stale: bool = False,
    ) -> EntitlementDecision:
        return EntitlementDecision(
            allowed=count < limit,
            remaining=max(0, limit - count),
            limit=limit,
            reset_at=reset_at,
            tier=tier,
            stale=stale,
            upgrade_message=policy.upgrade_message,
        )

    def _record_unlimited_use(self, user_id: str, policy: FeaturePolicy, now: datetime) -> None:
        """Best-effort analytics count for unlimited tiers. Never blocks or denies."""
        try:
            record = self.store.read(user_id, policy.feature_id)
            if record is not None:
                record = self.reconciler.reset_if_elapsed(record, now=now, reset_period=policy.reset_period)
            window_start = record.window_start if record else current_window_start(now, policy.reset_period)
            self.store.conditional_increment(
                user_id,
                policy.feature_id,
                UNLIMITED,
                window_start=window_start,
                reset_period=record.reset_period if record else policy.reset_period,
            )
        except StoreError as exc:
            logger.info(
                "Skipped analytics count for unlimited feature",
                extra={"user_id": user_id, "feature_id": policy.feature_id, "error": str(exc)},
            )

    def _report_store_failure(
        self, operation: str, user_id: str, policy: FeaturePolicy, exc: StoreError
    ) -> None:
        payload = {
            "user_id": user_id,
            "feature_id": policy.feature_id,
            "operation": operation,
            "error": str(exc),
            "error_code": exc.error_code,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.warning("Usage store unavailable", extra=payload)
        self._audit_sink("feature_quota.store_unavailable", payload)
        self._support_alert_sink(exc.error_code, payload)

    def _report_denial(self, user_id: str, policy: FeaturePolicy, tier: Tier, limit: Limit, *, count: int) -> None:
        payload = {
            "user_id": user_id,
            "feature_id": policy.feature_id,
            "tier": tier.value,
            "limit": limit,
            "count": count,
        }
        logger.info("Feature quota exhausted", extra=payload)
        self._audit_sink("feature_quota.consume_denied", payload)


# Module-level evaluator, built on first use from the environment.
_default_evaluator: Optional[EntitlementEvaluator] = None
_default_lock = Lock()


def get_default_evaluator() -> EntitlementEvaluator:
    global _default_evaluator
    with _default_lock:
        if _default_evaluator is None:
            _default_evaluator = EntitlementEvaluator.from_settings(load_settings())
        return _default_evaluator


def set_default_evaluator(evaluator: Optional[EntitlementEvaluator]) -> None:
    global _default_evaluator
    with _default_lock:
        _default_evaluator = evaluator


def evaluate(user_id: str, feature_id: str) -> EntitlementDecision:
    return get_default_evaluator().evaluate(user_id, feature_id)


def consume(user_id: str, feature_id: str) -> bool:
    return get_default_evaluator().consume(user_id, feature_id)


def get_usage(user_id: str, feature_id: str) -> Optional[UsageRecord]:
    return get_default_evaluator().get_usage(user_id, feature_id)
