"""
Integration tests for LoyaltyService on the in-memory store.
"""
from dataclasses import replace
from datetime import date

import pytest

from apps.backend.services.loyalty.errors import (
    AlreadyAwarded,
    DuplicateSegment,
    InsufficientPoints,
    InvalidAmount,
    InvalidRuleDefinition,
    LedgerInconsistency,
    NoPendingTierChange,
    UnknownCustomer,
)
from apps.backend.services.loyalty.loyalty_service import LoyaltyService


async def _customer(service, cid="c1", name="Sara"):
    await service.register_customer(cid, name, phone="0912", birthday=date(1990, 5, 4))
    return cid


@pytest.mark.asyncio
async def test_register_is_idempotent(service):
    first = await service.register_customer("c1", "Sara")
    second = await service.register_customer("c1", "Someone Else")

    assert first["created"] is True
    assert second["created"] is False
    assert second["customer"]["name"] == "Sara"
    assert second["loyalty"]["current_points"] == 0


@pytest.mark.asyncio
async def test_zero_point_redeem_fails_without_writing(service, repo):
    cid = await _customer(service)

    with pytest.raises(InvalidAmount):
        await service.redeem_points(cid, 0, "nothing")

    assert repo.transactions[cid] == []
    assert repo.accounts[cid].current_points == 0


@pytest.mark.asyncio
async def test_earn_then_redeem_replays_to_balance(service):
    cid = await _customer(service)

    await service.add_points(cid, 120, "welcome")
    out = await service.redeem_points(cid, 50, "coffee", order_reference="o-1")

    assert out["loyalty"]["current_points"] == 70
    assert out["transaction"]["balance_after"] == 70
    assert out["transaction"]["transaction_type"] == "REDEEMED_DISCOUNT"

    replay = await service.replay(cid)
    assert replay["points_balance"] == 70
    assert replay["consistent"] is True
    assert replay["transaction_count"] == 2


@pytest.mark.asyncio
async def test_redeem_more_than_balance(service, repo):
    cid = await _customer(service)
    await service.add_points(cid, 10, "welcome")

    with pytest.raises(InsufficientPoints):
        await service.redeem_points(cid, 11, "too much")
    assert repo.accounts[cid].current_points == 10


@pytest.mark.asyncio
async def test_add_points_rejects_debit_types(service):
    cid = await _customer(service)
    with pytest.raises(InvalidAmount):
        await service.add_points(cid, 10, "x", transaction_type="EXPIRED")
    with pytest.raises(InvalidAmount):
        await service.redeem_points(cid, 10, "x", transaction_type="EARNED_BONUS")


@pytest.mark.asyncio
async def test_unknown_customer(service):
    with pytest.raises(UnknownCustomer):
        await service.add_points("ghost", 10, "x")
    with pytest.raises(UnknownCustomer):
        await service.get_customer_loyalty_details("ghost")


@pytest.mark.asyncio
async def test_adjust_points(service):
    cid = await _customer(service)
    await service.adjust_points(cid, 40, "goodwill", created_by="ops")
    out = await service.adjust_points(cid, -15, "correction", created_by="ops")

    assert out["transaction"]["transaction_type"] == "ADJUSTMENT_SUBTRACT"
    assert out["loyalty"]["current_points"] == 25
    assert out["loyalty"]["points_adjusted_out"] == 15
    with pytest.raises(InsufficientPoints):
        await service.adjust_points(cid, -26, "too much")
    with pytest.raises(InvalidAmount):
        await service.adjust_points(cid, 0, "nothing")


@pytest.mark.asyncio
async def test_visit_reaches_gold_on_spend_only_policy(repo, clock, spend_policy):
    service = LoyaltyService(repo, policy=spend_policy, clock=clock)
    cid = await _customer(service)

    out = await service.record_visit(cid, 6_000_000, order_reference="o-9")

    assert out["loyalty"]["tier_level"] == "GOLD"
    assert out["tier"]["action"] == "UPGRADE"
    # points are earned at the tier held before the visit
    assert out["points_earned"] == 6000
    assert out["loyalty"]["lifetime_spent"] == 6_000_000
    assert out["loyalty"]["total_visits"] == 1
    assert out["transaction"]["visit_id"] == out["visit"]["id"]
    assert len(repo.visits[cid]) == 1


@pytest.mark.asyncio
async def test_small_visit_counts_without_points(service, repo):
    cid = await _customer(service)

    out = await service.record_visit(cid, 500)

    assert out["points_earned"] == 0
    assert out["transaction"] is None
    assert repo.accounts[cid].total_visits == 1
    assert repo.transactions[cid] == []


@pytest.mark.asyncio
async def test_year_spend_resets_in_new_year(service, repo, clock):
    cid = await _customer(service)
    await service.record_visit(cid, 2_000_000)
    clock.advance(days=365)

    await service.record_visit(cid, 1_000_000)

    account = repo.accounts[cid]
    assert account.current_year_spent == 1_000_000
    assert account.lifetime_spent == 3_000_000


@pytest.mark.asyncio
async def test_downgrade_is_only_proposed(repo, clock, spend_policy):
    service = LoyaltyService(repo, policy=spend_policy, clock=clock)
    cid = await _customer(service)
    repo.accounts[cid] = replace(repo.accounts[cid], tier_level="GOLD")

    out = await service.add_points(cid, 5, "bonus")

    assert out["loyalty"]["tier_level"] == "GOLD"
    pending = out["loyalty"]["pending_tier_change"]
    assert pending["recommended_tier"] == "BRONZE"

    confirmed = await service.confirm_tier_change(cid, confirmed_by="manager")
    assert confirmed["loyalty"]["tier_level"] == "BRONZE"
    assert confirmed["loyalty"]["pending_tier_change"] is None
    with pytest.raises(NoPendingTierChange):
        await service.confirm_tier_change(cid)


@pytest.mark.asyncio
async def test_dismiss_tier_change(repo, clock, spend_policy):
    service = LoyaltyService(repo, policy=spend_policy, clock=clock)
    cid = await _customer(service)
    repo.accounts[cid] = replace(repo.accounts[cid], tier_level="SILVER")

    proposed = await service.propose_tier_change(cid)
    assert proposed["recommendation"]["action"] == "DOWNGRADE"

    out = await service.dismiss_tier_change(cid)
    assert out["dismissed"]["current_tier"] == "SILVER"
    assert out["loyalty"]["tier_level"] == "SILVER"
    with pytest.raises(NoPendingTierChange):
        await service.dismiss_tier_change(cid)


@pytest.mark.asyncio
async def test_birthday_bonus_once_per_year(service, clock):
    cid = await _customer(service)

    out = await service.award_birthday_bonus(cid)
    assert out["transaction"]["points_change"] == 200
    with pytest.raises(AlreadyAwarded):
        await service.award_birthday_bonus(cid)

    clock.advance(days=310)
    again = await service.award_birthday_bonus(cid)
    assert again["loyalty"]["current_points"] == 400


@pytest.mark.asyncio
async def test_expire_old_points_is_idempotent(service, repo, clock):
    cid = await _customer(service)
    await service.add_points(cid, 100, "old")
    clock.advance(days=400)
    await service.add_points(cid, 50, "fresh")

    first = await service.expire_old_points(365)
    second = await service.expire_old_points(365)

    assert first["points_expired"] == 100
    assert first["customers_affected"] == 1
    assert second["points_expired"] == 0
    assert repo.accounts[cid].current_points == 50
    assert repo.accounts[cid].points_expired == 100
    assert (await service.replay(cid))["points_balance"] == 50


@pytest.mark.asyncio
async def test_mismatch_quarantines_customer(service, repo):
    cid = await _customer(service)
    await service.add_points(cid, 100, "welcome")
    repo.accounts[cid] = replace(repo.accounts[cid], current_points=90)

    with pytest.raises(LedgerInconsistency):
        await service.replay(cid)
    with pytest.raises(LedgerInconsistency) as exc:
        await service.add_points(cid, 10, "blocked")
    assert exc.value.details == {"customer_id": cid, "stored_balance": 90, "replayed_balance": 100}

    health = await service.verify_all_ledgers()
    assert health["quarantined"] == [cid]

    assert (await service.release_quarantine(cid))["released"] is True
    assert (await service.release_quarantine(cid))["released"] is False


@pytest.mark.asyncio
async def test_details_payload(service):
    cid = await _customer(service)
    for i in range(25):
        await service.add_points(cid, 1, f"tick {i}")

    out = await service.get_customer_loyalty_details(cid)

    assert len(out["transactions"]) == 20
    assert out["transactions"][0]["description"] == "tick 24"
    assert out["tier_benefits"]["tier"] == "BRONZE"
    assert out["next_tier_requirements"]["next_tier"] == "SILVER"
    assert out["pending_tier_change"] is None


@pytest.mark.asyncio
async def test_transaction_listing_filters_and_pages(service):
    cid = await _customer(service)
    other = await _customer(service, "c2", "Omid")
    for _ in range(3):
        await service.add_points(cid, 10, "earn")
    await service.redeem_points(cid, 5, "spend")
    await service.add_points(other, 7, "earn")

    page = await service.get_loyalty_transactions(customer_id=cid, page=1, limit=3)
    assert page["pagination"] == {"current_page": 1, "total": 4, "pages": 2, "limit": 3}
    assert page["transactions"][0]["transaction_type"] == "REDEEMED_DISCOUNT"

    redeemed = await service.get_loyalty_transactions(transaction_type="REDEEMED_DISCOUNT")
    assert redeemed["pagination"]["total"] == 1

    everything = await service.get_loyalty_transactions()
    assert everything["pagination"]["total"] == 5


@pytest.mark.asyncio
async def test_statistics(service, clock):
    for cid, pts in (("a", 300), ("b", 100), ("c", 200)):
        await _customer(service, cid, cid.upper())
        await service.add_points(cid, pts, "seed")
    await service.redeem_points("b", 40, "spend")
    await service.deactivate_customer("c")

    stats = await service.get_loyalty_statistics()

    assert stats["total_customers"] == 2
    assert stats["total_points_issued"] == 400
    assert stats["total_points_redeemed"] == 40
    assert stats["active_points"] == 360
    assert stats["average_points_per_customer"] == 180
    assert [c["customer_id"] for c in stats["top_loyalty_customers"]] == ["a", "b"]
    assert stats["tier_distribution"]["BRONZE"] == 2
    assert stats["recent_transactions_count"] == 3

    clock.advance(days=31)
    assert (await service.get_loyalty_statistics())["recent_transactions_count"] == 0
    assert (await service.get_loyalty_statistics(tier="GOLD"))["total_customers"] == 0


@pytest.mark.asyncio
async def test_segment_refresh_records_downgrades_once(service, repo, clock):
    cid = await _customer(service)
    out = await service.record_visit(cid, 6_000_000)
    # recency 100, frequency 20, monetary 100
    assert out["segment"] == "REGULAR"
    assert repo.movements[-1].direction == "UPGRADE"

    clock.advance(days=200)
    report = await service.update_all_customer_segments()

    assert report["total_customers"] == 1
    assert report["segment_distribution"]["OCCASIONAL"] == 1
    assert [m["customer_id"] for m in report["movements"]["downgraded"]] == [cid]
    assert any("win-back" in r for r in report["recommendations"])

    again = await service.update_all_customer_segments()
    assert again["movements"]["downgraded"] == []
    assert again["movements"]["unchanged"] == 1


@pytest.mark.asyncio
async def test_segment_views(service):
    await _customer(service, "a", "A")
    await _customer(service, "b", "B")
    await service.record_visit("a", 6_000_000)

    analysis = await service.get_segment_analysis()
    assert analysis["segment_distribution"]["REGULAR"] == {"count": 1, "total_value": 6_000_000}
    assert analysis["segment_distribution"]["NEW"] == {"count": 1, "total_value": 0}
    assert analysis["recent_movements"][0]["to_segment"] == "REGULAR"

    listed = await service.get_customers_by_segment("REGULAR")
    assert [c["customer"]["id"] for c in listed["customers"]] == ["a"]
    assert listed["customers"][0]["segment_analysis"]["score"] == pytest.approx(73.33)

    assert await service.get_upgradeable_customers("VIP") == []


@pytest.mark.asyncio
async def test_custom_segments(service):
    await _customer(service, "a", "A")
    await _customer(service, "b", "B")
    await service.record_visit("a", 2_000_000)
    rules = [{"field": "lifetimeSpent", "operator": "greater", "value": 1_000_000}]

    created = await service.create_custom_segment("Big Spenders", rules)
    assert created["segment_key"] == "big_spenders"
    assert created["customer_count"] == 1

    with pytest.raises(DuplicateSegment):
        await service.create_custom_segment("big spenders", rules)
    with pytest.raises(InvalidRuleDefinition):
        await service.create_custom_segment("Broken", [{"field": "x", "operator": "like", "value": 1}])
    with pytest.raises(InvalidRuleDefinition):
        await service.create_custom_segment("!!!", rules)

    assert (await service.evaluate_custom_segments("a"))["segments"] == ["big_spenders"]
    assert (await service.evaluate_custom_segments("b"))["segments"] == []

    await service.record_visit("b", 1_500_000)
    refreshed = await service.refresh_custom_segment_counts()
    assert refreshed["segments"] == {"big_spenders": 2}


@pytest.mark.asyncio
async def test_health_scores(service, repo, clock):
    await _customer(service, "a", "A")
    await _customer(service, "b", "B")
    await service.record_visit("a", 400_000)
    await service.record_feedback("a", 5, "great")
    await service.record_communication("a", responded=True)

    score = await service.get_customer_health_score("a")
    assert set(score) >= {
        "health_score",
        "health_level",
        "health_trend",
        "components",
        "risk_assessment",
        "prediction_models",
        "automated_insights",
        "update_frequency",
        "next_update_due",
    }
    assert score["components"]["feedback_sentiment"]["score"] == 100

    batch = await service.get_batch_health_scores(["a", "ghost", "b"])
    assert [s["customer_id"] for s in batch["scores"]] == ["a", "b"]
    assert batch["missing"] == ["ghost"]

    metrics = await service.get_health_scoring_metrics()
    assert metrics["total_customers"] == 2

    alerts = await service.get_health_score_alerts()
    assert alerts[0]["customer_id"] == "b"
    assert alerts[0]["customer_name"] == "B"

    assert await service.get_customers_needing_health_updates() == []
    clock.advance(days=1)
    assert "b" in await service.get_customers_needing_health_updates()

    refreshed = await service.refresh_all_health_scores()
    assert refreshed == {"refreshed": 2}


@pytest.mark.asyncio
async def test_feedback_rating_range(service):
    cid = await _customer(service)
    with pytest.raises(InvalidAmount):
        await service.record_feedback(cid, 6)
    with pytest.raises(UnknownCustomer):
        await service.record_feedback("ghost", 4)


@pytest.mark.asyncio
async def test_purchase_preview(service):
    cid = await _customer(service)
    out = await service.preview_purchase(cid, 2_000_000)
    assert out["advanced"] is False
    assert out["points_to_earn"] == 2000
