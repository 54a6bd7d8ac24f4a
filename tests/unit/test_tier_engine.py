"""
Unit tests for tier evaluation, recommendations and requirement payloads.
"""
from datetime import datetime, timezone

from apps.backend.services.loyalty.loyalty_policy import LoyaltyPolicy
from apps.backend.services.loyalty.tier_engine import TierEngine, TierRecommendation


def test_lifetime_spend_reaches_gold(spend_policy):
    status = TierEngine(spend_policy).evaluate({"lifetime_spent": 6_000_000})

    assert status.current_tier.key == "GOLD"
    assert status.next_tier.key == "PLATINUM"
    assert not status.is_top_tier


def test_all_thresholds_must_hold():
    engine = TierEngine(LoyaltyPolicy())
    # SILVER needs 5,000,000 lifetime AND 30 visits AND 3,000,000 this year
    metrics = {"lifetime_spent": 60_000_000, "total_visits": 29, "current_year_spent": 30_000_000}

    assert engine.evaluate(metrics).current_tier.key == "BRONZE"
    metrics["total_visits"] = 30
    assert engine.evaluate(metrics).current_tier.key == "SILVER"


def test_tier_is_monotone_in_spend(spend_policy):
    engine = TierEngine(spend_policy)
    ranks = [engine.evaluate({"lifetime_spent": s}).current_tier.rank for s in range(0, 20_000_001, 500_000)]
    assert ranks == sorted(ranks)


def test_recommend_upgrade_downgrade_none(spend_policy):
    engine = TierEngine(spend_policy)

    up = engine.recommend("BRONZE", {"lifetime_spent": 1_000_000})
    assert (up.action, up.recommended_tier) == ("UPGRADE", "SILVER")

    down = engine.recommend("GOLD", {"lifetime_spent": 1_000_000})
    assert (down.action, down.recommended_tier) == ("DOWNGRADE", "SILVER")
    assert "lifetimeSpent" in down.reason

    same = engine.recommend("SILVER", {"lifetime_spent": 1_000_000})
    assert same.action == "NONE"


def test_propose_tier_change_copies_recommendation():
    rec = TierRecommendation("DOWNGRADE", "GOLD", "SILVER", "No longer meets lifetimeSpent")
    at = datetime(2026, 3, 1, tzinfo=timezone.utc)

    pending = TierEngine.propose_tier_change("c1", rec, at)

    assert pending.current_tier == "GOLD"
    assert pending.recommended_tier == "SILVER"
    assert pending.proposed_at == at


def test_next_tier_requirements_only_required_metrics(spend_policy):
    out = TierEngine(spend_policy).next_tier_requirements("SILVER", {"lifetime_spent": 2_500_000})

    assert out["next_tier"] == "GOLD"
    assert list(out["requirements"]) == ["lifetimeSpent"]
    req = out["requirements"]["lifetimeSpent"]
    assert req == {"required": 5_000_000, "current": 2_500_000, "remaining": 2_500_000, "progress": 50.0}
    assert out["progress"] == 50.0


def test_next_tier_progress_is_furthest_metric():
    out = TierEngine(LoyaltyPolicy()).next_tier_requirements(
        "BRONZE", {"lifetime_spent": 2_500_000, "total_visits": 30, "current_year_spent": 0}
    )
    assert out["requirements"]["totalVisits"]["progress"] == 100.0
    assert out["requirements"]["yearlySpent"]["progress"] == 0.0
    assert out["progress"] == 100.0


def test_top_tier_has_no_requirements(spend_policy):
    out = TierEngine(spend_policy).next_tier_requirements("PLATINUM", {"lifetime_spent": 99_000_000})
    assert out == {"next_tier": None, "progress": 100, "requirements": {}}


def test_would_advance_with_purchase(spend_policy):
    engine = TierEngine(spend_policy)

    yes = engine.would_advance_with_purchase({"lifetime_spent": 900_000}, 100_000)
    assert yes["advanced"] is True
    assert yes["after"]["current_tier"]["key"] == "SILVER"
    assert yes["after"]["metrics"]["total_visits"] == 1

    no = engine.would_advance_with_purchase({"lifetime_spent": 900_000}, 99_999)
    assert no["advanced"] is False
    assert "Silver" in no["explanation"]


def test_tier_benefits_payload():
    out = TierEngine(LoyaltyPolicy()).tier_benefits("GOLD")
    assert out["tier"] == "GOLD"
    assert out["point_multiplier"] == "1.5"
    assert out["priority_support"] is True
    assert out["birthday_bonus"] == 1000
