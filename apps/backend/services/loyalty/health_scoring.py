"""
Customer Health Scoring
=======================

Purpose:
- Composite 0..100 health score from six weighted components.
- Churn / engagement / value risk assessment with mitigation hints.
- Deterministic predictions and rule-based insights.
- Fleet-level metrics and alerts over stored snapshots.

Design:
- Pure: reads a CustomerMetrics snapshot and (optionally) the previous
  HealthScore for trends. Persistence is the orchestrator's job.
- Aggregate is the weighted average over configured components only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .customer_metrics import CustomerMetrics
from .scoring_policy import HEALTH_COMPONENTS, RISK_CATEGORIES, UPDATE_INTERVAL_DAYS, ScoringPolicy

LTV_HORIZON_MONTHS = 24
DAYS_PER_MONTH = 30


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class ComponentScore:
    score: float
    weight: float
    trend: str = "STABLE"

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "weight": self.weight, "trend": self.trend}


@dataclass(frozen=True)
class RiskAssessment:
    probability: float
    risk_level: str
    primary_factors: List[str] = field(default_factory=list)
    mitigation_strategies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "probability": self.probability,
            "risk_level": self.risk_level,
            "primary_factors": list(self.primary_factors),
            "mitigation_strategies": list(self.mitigation_strategies),
        }


@dataclass(frozen=True)
class HealthScore:
    customer_id: str
    health_score: float
    health_level: str
    health_trend: str
    components: Dict[str, ComponentScore]
    risk_assessment: Dict[str, RiskAssessment]
    prediction_models: Dict[str, Any]
    automated_insights: Dict[str, List[str]]
    update_frequency: str
    next_update_due: datetime
    computed_at: datetime
    previous_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "health_score": self.health_score,
            "health_level": self.health_level,
            "health_trend": self.health_trend,
            "previous_score": self.previous_score,
            "components": {k: v.to_dict() for k, v in self.components.items()},
            "risk_assessment": {k: v.to_dict() for k, v in self.risk_assessment.items()},
            "prediction_models": self.prediction_models,
            "automated_insights": {k: list(v) for k, v in self.automated_insights.items()},
            "update_frequency": self.update_frequency,
            "next_update_due": self.next_update_due.isoformat(),
            "computed_at": self.computed_at.isoformat(),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "HealthScore":
        """
        Inverse of to_dict, used by stores that keep snapshots as JSON.
        """
        return HealthScore(
            customer_id=str(data["customer_id"]),
            health_score=float(data["health_score"]),
            health_level=str(data["health_level"]),
            health_trend=str(data.get("health_trend", "STABLE")),
            previous_score=data.get("previous_score"),
            components={
                k: ComponentScore(float(v["score"]), float(v["weight"]), str(v.get("trend", "STABLE")))
                for k, v in (data.get("components") or {}).items()
            },
            risk_assessment={
                k: RiskAssessment(
                    probability=float(v["probability"]),
                    risk_level=str(v["risk_level"]),
                    primary_factors=list(v.get("primary_factors") or []),
                    mitigation_strategies=list(v.get("mitigation_strategies") or []),
                )
                for k, v in (data.get("risk_assessment") or {}).items()
            },
            prediction_models=dict(data.get("prediction_models") or {}),
            automated_insights={k: list(v) for k, v in (data.get("automated_insights") or {}).items()},
            update_frequency=str(data.get("update_frequency", "MONTHLY")),
            next_update_due=_parse_dt(data["next_update_due"]),
            computed_at=_parse_dt(data["computed_at"]),
        )


class HealthScoringEngine:
    def __init__(self, policy: ScoringPolicy) -> None:
        self.policy = policy
        self.health = policy.health
        self.risk = policy.risk

    # -----------------------------
    # Components
    # -----------------------------
    def component_scores(self, m: CustomerMetrics) -> Dict[str, float]:
        h = self.health

        if m.spend_trend_ratio is not None:
            trend_score = h.spend_trend.score(m.spend_trend_ratio)
        elif m.spend_last_90_days > 0:
            trend_score = h.new_spender_trend_score
        else:
            trend_score = h.spend_trend.default
        aov_score = h.average_order_value.score(m.average_order_value) if m.average_order_value > 0 else 0.0

        mix = h.loyalty_mix
        loyalty = (
            h.tier_scores.get(m.tier_level, 0.0) * mix.get("tier", 0.0)
            + h.redemption_activity.score(m.redemptions_last_180_days) * mix.get("redemptions", 0.0)
            + h.points_balance.score(m.current_points) * mix.get("balance", 0.0)
        )

        if m.average_rating is None:
            sentiment = h.neutral_score
        else:
            sentiment = min(100.0, max(0.0, (m.average_rating - 1) / 4 * 100))

        rate = m.response_rate
        responsiveness = h.neutral_score if rate is None else min(100.0, rate * 100)

        scores = {
            "visit_frequency": h.visit_frequency.score(m.visits_last_90_days),
            "spending_behavior": (aov_score + trend_score) / 2,
            "loyalty_engagement": loyalty,
            "feedback_sentiment": sentiment,
            "communication_responsiveness": responsiveness,
            "recency": h.recency.score(m.last_visit_days),
        }
        return {k: round(v, 2) for k, v in scores.items()}

    def _trend(self, current: float, previous: Optional[float]) -> str:
        if previous is None:
            return "STABLE"
        diff = current - previous
        if diff > self.health.trend_sensitivity:
            return "IMPROVING"
        if diff < -self.health.trend_sensitivity:
            return "DECLINING"
        return "STABLE"

    # -----------------------------
    # Risk
    # -----------------------------
    def assess_risk(self, m: CustomerMetrics) -> Dict[str, RiskAssessment]:
        out: Dict[str, RiskAssessment] = {}
        for category in RISK_CATEGORIES:
            factors = self.risk.rules.get(category, [])
            fired = [f for f in factors if f.fires(m.value(f.metric))]
            probability = min(100.0, float(sum(f.weight for f in fired)))
            mitigations: List[str] = []
            for f in fired:
                if f.mitigation and f.mitigation not in mitigations:
                    mitigations.append(f.mitigation)
            out[category] = RiskAssessment(
                probability=probability,
                risk_level=self.risk.level_for(probability),
                primary_factors=[f.key for f in fired],
                mitigation_strategies=mitigations,
            )
        return out

    # -----------------------------
    # Predictions
    # -----------------------------
    @staticmethod
    def predictions(m: CustomerMetrics, churn_probability: float, visit_score: float) -> Dict[str, Any]:
        expected = None
        if m.last_visit_date is not None and m.average_visit_interval_days is not None:
            expected = (m.last_visit_date + timedelta(days=m.average_visit_interval_days)).isoformat()

        factor = {"INCREASING": 1.1, "DECREASING": 0.9}.get(m.spending_trend, 1.0)

        monthly = 0
        if m.first_visit_date is not None:
            active_days = max(DAYS_PER_MONTH, (m.as_of - m.first_visit_date).days)
            monthly = int(m.lifetime_spent / (active_days / DAYS_PER_MONTH))

        return {
            "next_visit": {
                "probability": max(0.0, 100.0 - churn_probability),
                "expected_date": expected,
                "confidence": visit_score,
            },
            "spending": {
                "next_month_spending": int(m.current_month_spent * factor),
                "spending_trend": m.spending_trend,
                "confidence": 70,
            },
            "lifetime_value": {
                "predicted_ltv": monthly * LTV_HORIZON_MONTHS,
                "average_monthly_spend": monthly,
                "timeframe_months": LTV_HORIZON_MONTHS,
            },
        }

    # -----------------------------
    # Insights
    # -----------------------------
    def insights(
        self,
        m: CustomerMetrics,
        level: str,
        components: Dict[str, float],
        risk: Dict[str, RiskAssessment],
    ) -> Dict[str, List[str]]:
        critical: List[str] = []
        opportunities: List[str] = []
        recommendations: List[str] = []
        actions: List[str] = []

        if self.health.is_critical(level):
            critical.append("Customer health is at a critical level")
        if self.risk.is_high(risk["churn"].risk_level):
            critical.append("High probability of churn")

        if m.spending_trend == "INCREASING":
            opportunities.append("Spending is rising: offer premium products")
        if components.get("loyalty_engagement", 0) >= 75:
            opportunities.append("Highly engaged with the loyalty program: candidate for a tier upgrade")

        if self.health.needs_attention(level):
            recommendations.append("Improve the customer experience")
            recommendations.append("Follow up with a satisfaction survey")
        if components.get("feedback_sentiment", 100) < 70:
            recommendations.append("Review and fix service weak points")

        if m.last_visit_days > 30:
            actions.append("Call and invite the customer back")
        if m.current_points > 500:
            actions.append("Remind the customer to use their points")

        return {
            "critical_alerts": critical,
            "opportunities": opportunities,
            "recommendations": recommendations,
            "next_best_actions": actions,
        }

    # -----------------------------
    # Main entry
    # -----------------------------
    def score(self, m: CustomerMetrics, previous: Optional[HealthScore] = None) -> HealthScore:
        raw = self.component_scores(m)
        weights = {k: w for k, w in self.health.weights.items() if k in HEALTH_COMPONENTS}
        total_weight = sum(weights.values())
        aggregate = round(sum(raw[k] * w for k, w in weights.items()) / total_weight, 2)

        components: Dict[str, ComponentScore] = {}
        for name in HEALTH_COMPONENTS:
            if name not in weights:
                continue
            prior = previous.components.get(name) if previous else None
            components[name] = ComponentScore(
                score=raw[name],
                weight=weights[name],
                trend=self._trend(raw[name], prior.score if prior else None),
            )

        risk = self.assess_risk(m)
        level = self.health.level_for(aggregate)
        frequency = self.health.update_frequency.get(level, self.health.default_update_frequency)

        return HealthScore(
            customer_id=m.customer_id,
            health_score=aggregate,
            health_level=level,
            health_trend=self._trend(aggregate, previous.health_score if previous else None),
            previous_score=previous.health_score if previous else None,
            components=components,
            risk_assessment=risk,
            prediction_models=self.predictions(m, risk["churn"].probability, raw["visit_frequency"]),
            automated_insights=self.insights(m, level, raw, risk),
            update_frequency=frequency,
            next_update_due=m.as_of + timedelta(days=UPDATE_INTERVAL_DAYS[frequency]),
            computed_at=m.as_of,
        )

    # -----------------------------
    # Fleet views
    # -----------------------------
    def fleet_metrics(self, snapshots: Iterable[HealthScore]) -> Dict[str, Any]:
        items = list(snapshots)
        total = len(items)
        levels = [lvl for _, lvl in self.health.levels] + [self.health.fallback_level]
        risk_levels = [lvl for _, lvl in self.risk.levels] + [self.risk.fallback_level]

        return {
            "total_customers": total,
            "average_health_score": round(sum(s.health_score for s in items) / total, 2) if total else 0.0,
            "health_distribution": {lvl: sum(1 for s in items if s.health_level == lvl) for lvl in levels},
            "churn_risk_distribution": {
                lvl: sum(1 for s in items if s.risk_assessment["churn"].risk_level == lvl) for lvl in risk_levels
            },
            "trends_analysis": {
                "improving": sum(1 for s in items if s.health_trend == "IMPROVING"),
                "stable": sum(1 for s in items if s.health_trend == "STABLE"),
                "declining": sum(1 for s in items if s.health_trend == "DECLINING"),
            },
        }

    def alerts(self, snapshots: Iterable[HealthScore], names: Dict[str, str]) -> List[Dict[str, Any]]:
        out = []
        for s in snapshots:
            name = names.get(s.customer_id, s.customer_id)
            churn_risk = s.risk_assessment["churn"]
            churn = churn_risk.probability
            if self.health.is_critical(s.health_level):
                alert_type, priority = "CRITICAL_HEALTH", "HIGH"
                message = f"Health score of {name} is critical ({s.health_score})"
            elif self.risk.is_high(churn_risk.risk_level):
                alert_type, priority = "HIGH_CHURN_RISK", "HIGH"
                message = f"High churn probability for {name} ({churn:g}%)"
            elif s.health_trend == "DECLINING":
                alert_type, priority = "DECLINING_TREND", "MEDIUM"
                message = f"Health score of {name} is declining"
            else:
                continue
            out.append(
                {
                    "customer_id": s.customer_id,
                    "customer_name": name,
                    "health_score": s.health_score,
                    "alert_type": alert_type,
                    "message": message,
                    "priority": priority,
                }
            )
        return sorted(out, key=lambda a: (a["health_score"], a["customer_id"]))

    @staticmethod
    def needing_update(snapshots: Iterable[HealthScore], as_of: datetime) -> List[str]:
        return sorted(s.customer_id for s in snapshots if s.next_update_due <= as_of)
