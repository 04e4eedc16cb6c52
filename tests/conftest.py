"""
Shared pytest fixtures for feature quota tests.

The durable store runs on a file-backed SQLite database per test so that
several threads can hold their own connections.
"""

from datetime import datetime, timedelta, timezone

import pytest

from feature_quota.cache import UsageCache
from feature_quota.catalog import FeatureCatalog
from feature_quota.models import FeaturePolicy, ResetPeriod, Tier
from feature_quota.service import EntitlementEvaluator
from feature_quota.settings import QuotaSettings
from feature_quota.store import UsageStore, create_store_engine

NOW = datetime(2026, 10, 18, 15, 30, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.fail = False

    def _maybe_fail(self):
        if self.fail:
            import redis

            raise redis.ConnectionError("redis down")

    def ping(self):
        self._maybe_fail()
        return True

    def get(self, key):
        self._maybe_fail()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._maybe_fail()
        self.store[key] = value

    def delete(self, key):
        self._maybe_fail()
        self.store.pop(key, None)


class TierBoard:
    """Stand-in subscription oracle: tiers set per user, free by default."""

    def __init__(self):
        self.tiers = {}
        self.error = None

    def __call__(self, user_id):
        if self.error is not None:
            raise self.error
        return self.tiers.get(user_id, Tier.FREE)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def catalog():
    return FeatureCatalog.from_policies(
        [
            FeaturePolicy("ai_recommendations", 5, None, ResetPeriod.MONTHLY,
                          upgrade_message="Upgrade to Plus for unlimited AI recommendations"),
            FeaturePolicy("saved_scholarships", 3, None, ResetPeriod.NEVER),
            FeaturePolicy("essay_assistance", 0, None, ResetPeriod.MONTHLY,
                          upgrade_message="Upgrade to Plus to unlock AI essay assistance"),
            FeaturePolicy("matches_viewed", 10, None, ResetPeriod.MONTHLY, fail_open=True),
            FeaturePolicy("school_search", 2, 20, ResetPeriod.DAILY),
            FeaturePolicy("essay_drafts", 1, 3, ResetPeriod.WEEKLY),
        ]
    )


@pytest.fixture
def engine(tmp_path):
    settings = QuotaSettings(
        database_url=f"sqlite:///{tmp_path / 'usage.db'}",
        store_timeout_seconds=10,
    )
    eng = create_store_engine(settings)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    usage_store = UsageStore(engine)
    usage_store.create_schema()
    return usage_store


@pytest.fixture
def cache(clock):
    return UsageCache(redis_url="", ttl_seconds=300, stale_after_seconds=60, clock=clock)


@pytest.fixture
def tiers():
    return TierBoard()


@pytest.fixture
def audit_events():
    return []


@pytest.fixture
def evaluator(catalog, store, cache, tiers, clock, audit_events):
    return EntitlementEvaluator(
        catalog=catalog,
        store=store,
        cache=cache,
        tier_resolver=tiers,
        clock=clock,
        audit_sink=lambda event, payload: audit_events.append((event, payload)),
    )
