"""
Tests for EntitlementEvaluator.

Verifies:
- paid users on unlimited features are never metered or denied
- free users are denied after exactly N uses within a window
- concurrent consume calls never overshoot the quota
- elapsed windows reset before the next increment
- store failures fail closed (unless the feature is configured fail-open)
- oracle failures fall back to the free tier
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from feature_quota.errors import (
    ConfigurationError,
    InvalidUserIdError,
    OracleUnavailableError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from feature_quota.models import UNLIMITED, ResetPeriod, Tier, UsageRecord
from feature_quota.service import EntitlementEvaluator, normalize_tier

from .conftest import NOW


def _store_down(operation="read"):
    return StoreTimeoutError(operation, "timed out after 2s")


class TestPaidUnlimited:
    def test_evaluate_and_consume_always_allowed(self, evaluator, tiers, store):
        tiers.tiers["user-1"] = Tier.PAID

        for _ in range(20):
            assert evaluator.consume("user-1", "ai_recommendations") is True

        decision = evaluator.evaluate("user-1", "ai_recommendations")
        assert decision.allowed is True
        assert decision.remaining is UNLIMITED
        assert decision.limit is UNLIMITED
        assert decision.reset_at is None

    def test_consume_does_not_write_to_store(self, evaluator, tiers, store):
        tiers.tiers["user-1"] = "plus"

        with patch.object(store, "conditional_increment") as increment, patch.object(store, "read") as read:
            assert evaluator.consume("user-1", "essay_assistance") is True

        increment.assert_not_called()
        read.assert_not_called()
        assert store.read("user-1", "essay_assistance") is None

    def test_analytics_tracking_counts_without_gating(self, catalog, store, cache, tiers, clock):
        tiers.tiers["user-1"] = Tier.PAID
        evaluator = EntitlementEvaluator(
            catalog=catalog, store=store, cache=cache, tier_resolver=tiers,
            clock=clock, track_unlimited_usage=True,
        )

        for _ in range(7):
            assert evaluator.consume("user-1", "ai_recommendations") is True

        assert store.read("user-1", "ai_recommendations").count == 7

    def test_analytics_tracking_failure_never_denies(self, catalog, store, cache, tiers, clock):
        tiers.tiers["user-1"] = Tier.PAID
        evaluator = EntitlementEvaluator(
            catalog=catalog, store=store, cache=cache, tier_resolver=tiers,
            clock=clock, track_unlimited_usage=True,
        )

        with patch.object(store, "read", side_effect=_store_down()):
            assert evaluator.consume("user-1", "ai_recommendations") is True

    def test_finite_paid_limit_is_enforced(self, evaluator, tiers):
        tiers.tiers["user-1"] = Tier.PAID

        results = [evaluator.consume("user-1", "essay_drafts") for _ in range(4)]

        assert results == [True, True, True, False]
        decision = evaluator.evaluate("user-1", "essay_drafts")
        assert decision.limit == 3
        assert decision.remaining == 0


class TestFreeTierQuota:
    def test_denied_after_exactly_limit_uses(self, evaluator):
        results = [evaluator.consume("user-1", "saved_scholarships") for _ in range(4)]

        assert results == [True, True, True, False]
        decision = evaluator.evaluate("user-1", "saved_scholarships")
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.reset_at is None

    def test_remaining_counts_down(self, evaluator):
        assert evaluator.evaluate("user-1", "ai_recommendations").remaining == 5
        evaluator.consume("user-1", "ai_recommendations")
        evaluator.consume("user-1", "ai_recommendations")

        decision = evaluator.evaluate("user-1", "ai_recommendations")
        assert decision.remaining == 3
        assert decision.limit == 5
        assert decision.reset_at == datetime(2026, 11, 1, tzinfo=timezone.utc)

    def test_zero_limit_feature_is_unavailable_without_storage(self, evaluator, store, audit_events):
        with patch.object(store, "read") as read:
            decision = evaluator.evaluate("user-1", "essay_assistance")
            assert evaluator.consume("user-1", "essay_assistance") is False

        read.assert_not_called()
        assert decision.allowed is False
        assert decision.limit == 0
        assert decision.to_dict()["upgrade_message"] == "Upgrade to Plus to unlock AI essay assistance"
        assert audit_events[-1][0] == "feature_quota.consume_denied"

    def test_rejected_consume_leaves_cache_at_limit(self, evaluator, cache):
        for _ in range(3):
            evaluator.consume("user-1", "saved_scholarships")
        assert evaluator.consume("user-1", "saved_scholarships") is False
        assert cache.get("user-1", "saved_scholarships").record.count == 3

    def test_consume_never_trusts_the_cache(self, evaluator, cache, store):
        for _ in range(3):
            evaluator.consume("user-1", "saved_scholarships")
        cache.invalidate("user-1", "saved_scholarships")
        cache.put(
            "user-1",
            "saved_scholarships",
            UsageRecord("user-1", "saved_scholarships", 0, NOW, ResetPeriod.NEVER),
        )

        assert evaluator.evaluate("user-1", "saved_scholarships").allowed is True
        assert evaluator.consume("user-1", "saved_scholarships") is False

    def test_concurrent_consume_grants_exactly_limit(self, evaluator, store):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: evaluator.consume("user-1", "ai_recommendations"), range(12)))

        assert results.count(True) == 5
        assert store.read("user-1", "ai_recommendations").count == 5


class TestWindowReset:
    def test_consume_resets_elapsed_window_first(self, evaluator, store):
        forty_days_ago = NOW - timedelta(days=40)
        for _ in range(5):
            store.conditional_increment(
                "user-1", "ai_recommendations", 5,
                window_start=forty_days_ago, reset_period=ResetPeriod.MONTHLY,
            )

        assert evaluator.consume("user-1", "ai_recommendations") is True

        record = store.read("user-1", "ai_recommendations")
        assert record.count == 1
        assert record.window_start == datetime(2026, 10, 1, tzinfo=timezone.utc)

    def test_evaluate_reports_fresh_window_without_writing(self, evaluator, store):
        old = datetime(2026, 9, 3, tzinfo=timezone.utc)
        for _ in range(5):
            store.conditional_increment(
                "user-1", "ai_recommendations", 5, window_start=old, reset_period=ResetPeriod.MONTHLY
            )

        decision = evaluator.evaluate("user-1", "ai_recommendations")

        assert decision.allowed is True
        assert decision.remaining == 5
        assert store.read("user-1", "ai_recommendations").count == 5

    def test_daily_quota_returns_next_day(self, evaluator, clock):
        assert evaluator.consume("user-1", "school_search") is True
        assert evaluator.consume("user-1", "school_search") is True
        assert evaluator.consume("user-1", "school_search") is False

        clock.advance(days=1)

        assert evaluator.evaluate("user-1", "school_search").remaining == 2
        assert evaluator.consume("user-1", "school_search") is True

    def test_clock_going_backwards_does_not_reset(self, evaluator, clock):
        for _ in range(5):
            evaluator.consume("user-1", "ai_recommendations")

        clock.now = NOW - timedelta(days=90)

        assert evaluator.consume("user-1", "ai_recommendations") is False


class TestStoreFailures:
    def test_consume_fails_closed_on_timeout_without_cache(self, evaluator, store, audit_events):
        with patch.object(store, "read", side_effect=_store_down()):
            assert evaluator.consume("user-1", "ai_recommendations") is False
        assert audit_events[-1][0] == "feature_quota.store_unavailable"
        assert audit_events[-1][1]["error_code"] == "USAGE_STORE_TIMEOUT"

    def test_consume_fails_closed_when_increment_fails(self, evaluator, store):
        with patch.object(
            store, "conditional_increment",
            side_effect=StoreUnavailableError("conditional_increment", "connection reset"),
        ):
            assert evaluator.consume("user-1", "ai_recommendations") is False
        assert store.read("user-1", "ai_recommendations") is None

    def test_evaluate_without_cache_fails_closed(self, evaluator, store):
        with patch.object(store, "read", side_effect=_store_down()):
            decision = evaluator.evaluate("user-1", "ai_recommendations")

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.stale is True

    def test_evaluate_fail_open_feature(self, evaluator, store):
        with patch.object(store, "read", side_effect=_store_down()):
            decision = evaluator.evaluate("user-1", "matches_viewed")

        assert decision.allowed is True
        assert decision.remaining == 10
        assert decision.stale is True

    def test_evaluate_falls_back_to_stale_cache(self, evaluator, store, clock):
        evaluator.consume("user-1", "ai_recommendations")
        evaluator.consume("user-1", "ai_recommendations")
        clock.advance(minutes=2)

        with patch.object(store, "read", side_effect=_store_down()):
            decision = evaluator.evaluate("user-1", "ai_recommendations")

        assert decision.allowed is True
        assert decision.remaining == 3
        assert decision.stale is True

    def test_get_usage_propagates_store_errors(self, evaluator, store):
        with patch.object(store, "read", side_effect=_store_down()):
            with pytest.raises(StoreTimeoutError):
                evaluator.get_usage("user-1", "ai_recommendations")


class TestTierResolution:
    def test_oracle_failure_falls_back_to_free(self, evaluator, tiers, audit_events):
        tiers.error = ConnectionError("billing api down")

        decision = evaluator.evaluate("user-1", "ai_recommendations")

        assert decision.tier == Tier.FREE
        assert decision.limit == 5
        assert audit_events[-1][0] == "feature_quota.tier_fallback"
        assert evaluator.consume("user-1", "essay_assistance") is False

    def test_unrecognised_tier_falls_back_to_free(self, evaluator, tiers):
        tiers.tiers["user-1"] = "enterprise-gold"
        assert evaluator.evaluate("user-1", "essay_assistance").allowed is False

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (Tier.PAID, Tier.PAID),
            ("paid", Tier.PAID),
            (" Plus ", Tier.PAID),
            ("plan_plus", Tier.PAID),
            (True, Tier.PAID),
            ("free", Tier.FREE),
            (False, Tier.FREE),
        ],
    )
    def test_normalize_tier(self, raw, expected):
        assert normalize_tier("user-1", raw) == expected

    def test_normalize_tier_rejects_unknown(self):
        with pytest.raises(OracleUnavailableError):
            normalize_tier("user-1", None)


class TestScenarios:
    def test_scenario_a_free_user_exhausted_for_the_month(self, evaluator):
        for _ in range(5):
            assert evaluator.consume("user-1", "ai_recommendations") is True

        decision = evaluator.evaluate("user-1", "ai_recommendations")

        assert decision.allowed is False
        assert decision.remaining == 0

    def test_scenario_b_upgrade_lifts_the_limit_without_reset(self, evaluator, tiers, store):
        for _ in range(5):
            evaluator.consume("user-1", "ai_recommendations")

        tiers.tiers["user-1"] = Tier.PAID
        evaluator.handle_subscription_change("user-1")
        decision = evaluator.evaluate("user-1", "ai_recommendations")

        assert decision.allowed is True
        assert decision.remaining is UNLIMITED
        assert store.read("user-1", "ai_recommendations").count == 5

    def test_scenario_c_stale_monthly_window(self, evaluator, store):
        store.conditional_increment(
            "user-1", "ai_recommendations", 5,
            window_start=NOW - timedelta(days=40), reset_period=ResetPeriod.MONTHLY,
        )

        assert evaluator.consume("user-1", "ai_recommendations") is True
        assert store.read("user-1", "ai_recommendations").count == 1

    def test_scenario_d_timeout_during_consume(self, evaluator, store, cache):
        with patch.object(store, "conditional_increment", side_effect=_store_down("conditional_increment")):
            assert evaluator.consume("user-1", "ai_recommendations") is False
        assert cache.get("user-1", "ai_recommendations") is None


def test_unknown_feature_raises_configuration_error(evaluator):
    with pytest.raises(ConfigurationError):
        evaluator.evaluate("user-1", "essay-grader")
    with pytest.raises(ConfigurationError):
        evaluator.consume("user-1", "essay-grader")



def test_blank_user_id_is_rejected(evaluator):
    with pytest.raises(ValueError, match="user_id is required"):
        evaluator.evaluate("  ", "ai_recommendations")


def test_module_level_helpers_use_default_evaluator(evaluator):
    from feature_quota import service

    service.set_default_evaluator(evaluator)
    try:
        assert service.consume("user-1", "saved_scholarships") is True
        assert service.evaluate("user-1", "saved_scholarships").remaining == 2
        assert service.get_usage("user-1", "saved_scholarships").count == 1
    finally:
        service.set_default_evaluator(None)


class TestTryConsume:
    def test_store_failure_is_reported_separately_from_exhaustion(self, evaluator, store):
        with patch.object(store, "conditional_increment", side_effect=_store_down("conditional_increment")):
            outcome = evaluator.try_consume("user-1", "ai_recommendations")

        assert outcome.accepted is False
        assert outcome.store_failed is True
        assert outcome.error.error_code == "USAGE_STORE_TIMEOUT"

    def test_exhaustion_has_no_store_error(self, evaluator):
        for _ in range(3):
            evaluator.try_consume("user-1", "saved_scholarships")

        outcome = evaluator.try_consume("user-1", "saved_scholarships")

        assert outcome.accepted is False
        assert outcome.store_failed is False

    def test_denial_refreshes_an_outdated_cache_entry(self, evaluator, store, cache):
        for _ in range(3):
            evaluator.consume("user-1", "saved_scholarships")
        window_start = store.read("user-1", "saved_scholarships").window_start
        cache.put(
            "user-1",
            "saved_scholarships",
            UsageRecord("user-1", "saved_scholarships", 1, window_start, ResetPeriod.NEVER),
        )

        assert evaluator.consume("user-1", "saved_scholarships") is False
        assert evaluator.evaluate("user-1", "saved_scholarships").allowed is False


def test_blank_user_id_is_a_quota_error(evaluator):
    with pytest.raises(InvalidUserIdError) as exc:
        evaluator.consume("", "ai_recommendations")
    assert exc.value.to_dict() == {"error": "INVALID_USER_ID", "message": "user_id is required"}
