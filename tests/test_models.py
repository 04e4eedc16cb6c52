from __future__ import annotations

import pytest

from feature_quota.models import UNLIMITED, EntitlementDecision, Tier


def _decision(remaining, limit, tier=Tier.FREE):
    return EntitlementDecision(
        allowed=remaining is UNLIMITED or remaining > 0,
        remaining=remaining,
        limit=limit,
        reset_at=None,
        tier=tier,
    )


@pytest.mark.parametrize(
    "remaining, limit, expected",
    [
        (5, 5, 0),
        (3, 5, 40),
        (0, 5, 100),
        (2, 3, 33),
        (1, 8, 88),
        (0, 0, 100),
    ],
)
def test_usage_percentage(remaining, limit, expected):
    assert _decision(remaining, limit).usage_percentage == expected


def test_unlimited_usage_percentage_is_zero():
    decision = _decision(UNLIMITED, UNLIMITED, tier=Tier.PAID)

    assert decision.usage_percentage == 0
    assert decision.to_dict()["usage_percentage"] == 0
