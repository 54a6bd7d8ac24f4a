"""
Unit tests for customer health scoring, risk and fleet views.
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from apps.backend.services.loyalty.customer_metrics import CustomerMetrics
from apps.backend.services.loyalty.health_scoring import HealthScore, HealthScoringEngine
from apps.backend.services.loyalty.scoring_policy import HealthPolicy, RiskPolicy, ScoringPolicy

AS_OF = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _strong(cid="strong"):
    return CustomerMetrics(
        customer_id=cid,
        as_of=AS_OF,
        lifetime_spent=6_000_000,
        total_visits=20,
        current_points=2000,
        tier_level="PLATINUM",
        first_visit_date=AS_OF - timedelta(days=300),
        last_visit_date=AS_OF - timedelta(days=2),
        last_visit_days=2,
        visits_last_90_days=12,
        visits_prev_90_days=8,
        spend_last_90_days=1_100_000,
        spend_prev_90_days=1_000_000,
        average_visit_interval_days=15.0,
        redemptions_last_180_days=3,
        feedback_count=2,
        average_rating=5.0,
        messages_sent=10,
        messages_responded=10,
    )


def _weak(cid="weak"):
    return CustomerMetrics(customer_id=cid, as_of=AS_OF)


def test_strong_customer_is_excellent():
    score = HealthScoringEngine(ScoringPolicy()).score(_strong())

    assert score.health_score == 100
    assert score.health_level == "EXCELLENT"
    assert score.health_trend == "STABLE"
    assert score.update_frequency == "MONTHLY"
    assert score.next_update_due == AS_OF + timedelta(days=30)
    assert score.risk_assessment["churn"].probability == 0


def test_never_visited_customer_is_poor():
    score = HealthScoringEngine(ScoringPolicy()).score(_weak())

    assert score.components["visit_frequency"].score == 0
    assert score.components["spending_behavior"].score == 5
    assert score.components["loyalty_engagement"].score == 23.5
    assert score.components["feedback_sentiment"].score == 50
    assert score.components["communication_responsiveness"].score == 50
    assert score.components["recency"].score == 0
    assert score.health_score == 18.2
    assert score.health_level == "POOR"
    assert score.update_frequency == "DAILY"


def test_aggregate_is_weighted_average_of_components():
    score = HealthScoringEngine(ScoringPolicy()).score(replace(_strong(), average_rating=3.0, last_visit_days=45))
    total = sum(c.weight for c in score.components.values())
    expected = round(sum(c.score * c.weight for c in score.components.values()) / total, 2)
    assert score.health_score == pytest.approx(expected, abs=0.01)


def test_only_configured_components_count():
    policy = ScoringPolicy(health=HealthPolicy(weights={"recency": 1.0}))
    score = HealthScoringEngine(policy).score(_weak())

    assert list(score.components) == ["recency"]
    assert score.health_score == 0


def test_risk_factors_missing_metrics_never_fire():
    risk = HealthScoringEngine(ScoringPolicy()).assess_risk(_weak())

    churn = risk["churn"]
    # only the absence rule has data; trends and rating are unknown
    assert churn.primary_factors == ["long_absence"]
    assert churn.probability == 40
    assert churn.risk_level == "MEDIUM"
    assert churn.mitigation_strategies == ["Call and invite the customer back"]


def test_trend_against_previous_snapshot():
    engine = HealthScoringEngine(ScoringPolicy())
    previous = engine.score(_weak("c1"))
    current = engine.score(replace(_strong(), customer_id="c1"), previous)

    assert current.health_trend == "IMPROVING"
    assert current.previous_score == previous.health_score
    assert current.components["recency"].trend == "IMPROVING"

    again = engine.score(replace(_strong(), customer_id="c1"), current)
    assert again.health_trend == "STABLE"


def test_snapshot_survives_json_shape():
    score = HealthScoringEngine(ScoringPolicy()).score(_strong())
    assert HealthScore.from_dict(score.to_dict()) == score


def test_predictions_and_insights():
    score = HealthScoringEngine(ScoringPolicy()).score(_strong())
    pm = score.prediction_models

    assert pm["next_visit"]["expected_date"] == (AS_OF + timedelta(days=13)).isoformat()
    assert pm["spending"]["spending_trend"] == "INCREASING"
    assert pm["lifetime_value"]["average_monthly_spend"] == 600_000
    assert pm["lifetime_value"]["predicted_ltv"] == 600_000 * 24
    assert "Remind the customer to use their points" in score.automated_insights["next_best_actions"]


def test_fleet_metrics_and_alerts():
    engine = HealthScoringEngine(ScoringPolicy())
    snapshots = [engine.score(_strong("a")), engine.score(_weak("b")), engine.score(_weak("c"))]

    fleet = engine.fleet_metrics(snapshots)
    assert fleet["total_customers"] == 3
    assert fleet["health_distribution"]["POOR"] == 2
    assert fleet["health_distribution"]["EXCELLENT"] == 1
    assert fleet["average_health_score"] == round((100 + 18.2 + 18.2) / 3, 2)

    alerts = engine.alerts(snapshots, {"b": "Bita"})
    assert [a["customer_id"] for a in alerts] == ["b", "c"]
    assert alerts[0]["customer_name"] == "Bita"
    assert alerts[0]["alert_type"] == "CRITICAL_HEALTH"


def test_needing_update():
    engine = HealthScoringEngine(ScoringPolicy())
    snapshots = [engine.score(_strong("a")), engine.score(_weak("b"))]

    assert engine.needing_update(snapshots, AS_OF) == []
    assert engine.needing_update(snapshots, AS_OF + timedelta(days=1)) == ["b"]
    assert engine.needing_update(snapshots, AS_OF + timedelta(days=30)) == ["a", "b"]


def test_insights_and_alerts_follow_configured_levels():
    default = HealthScoringEngine(ScoringPolicy()).score(_weak())
    assert "Customer health is at a critical level" in default.automated_insights["critical_alerts"]
    assert "High probability of churn" not in default.automated_insights["critical_alerts"]

    policy = ScoringPolicy(
        health=HealthPolicy(levels=((80.0, "EXCELLENT"), (60.0, "GOOD"), (10.0, "FAIR"))),
        risk=RiskPolicy(levels=((80.0, "CRITICAL"), (30.0, "HIGH"))),
    )
    engine = HealthScoringEngine(policy)
    score = engine.score(_weak("b"))

    assert score.health_level == "FAIR"
    assert score.risk_assessment["churn"].risk_level == "HIGH"
    insights = score.automated_insights
    assert insights["critical_alerts"] == ["High probability of churn"]
    assert "Improve the customer experience" in insights["recommendations"]

    alerts = engine.alerts([score], {})
    assert [a["alert_type"] for a in alerts] == ["HIGH_CHURN_RISK"]
