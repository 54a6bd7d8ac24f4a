"""
Scoring Policy (Canonical)
==========================

Named, testable configuration for everything that turns metrics into scores:
- RFM bucketing breakpoints, axis weights and segment thresholds
- Health component weights, breakpoints, level cut points and trend sensitivity
- Risk rule sets (churn / engagement / value) and their mitigation lookups

Nothing here computes a customer result; engines read these objects.
Malformed configuration raises ValueError at construction time.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple


Direction = Literal["higher_is_better", "lower_is_better"]
Comparator = Literal[">", ">=", "<", "<="]

SEGMENT_ORDER: List[str] = ["NEW", "OCCASIONAL", "REGULAR", "VIP"]
RFM_AXES: List[str] = ["recency", "frequency", "monetary"]
HEALTH_COMPONENTS: List[str] = [
    "visit_frequency",
    "spending_behavior",
    "loyalty_engagement",
    "feedback_sentiment",
    "communication_responsiveness",
    "recency",
]
RISK_CATEGORIES: List[str] = ["churn", "engagement", "value"]
UPDATE_INTERVAL_DAYS = {"DAILY": 1, "WEEKLY": 7, "MONTHLY": 30}


@dataclass(frozen=True)
class Breakpoints:
    """
    Ordered (threshold, score) buckets.

    higher_is_better: first bucket with value >= threshold wins, scanning from
                      the highest threshold down.
    lower_is_better:  first bucket with value <= threshold wins, scanning from
                      the lowest threshold up.
    """
    buckets: Tuple[Tuple[float, float], ...]
    direction: Direction = "higher_is_better"
    default: float = 0.0

    def __post_init__(self) -> None:
        if not self.buckets:
            raise ValueError("breakpoints need at least one bucket")
        for threshold, score in self.buckets:
            if not 0 <= score <= 100:
                raise ValueError(f"bucket score out of range: {score}")
        if not 0 <= self.default <= 100:
            raise ValueError(f"default score out of range: {self.default}")
        if self.direction not in ("higher_is_better", "lower_is_better"):
            raise ValueError(f"unknown breakpoint direction: {self.direction}")
        thresholds = [b[0] for b in self.buckets]
        if len(set(thresholds)) != len(thresholds):
            raise ValueError("breakpoint thresholds must be unique")

    def score(self, value: float) -> float:
        if self.direction == "higher_is_better":
            for threshold, score in sorted(self.buckets, key=lambda b: b[0], reverse=True):
                if value >= threshold:
                    return float(score)
        else:
            for threshold, score in sorted(self.buckets, key=lambda b: b[0]):
                if value <= threshold:
                    return float(score)
        return float(self.default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buckets": [[t, s] for t, s in self.buckets],
            "direction": self.direction,
            "default": self.default,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Breakpoints":
        buckets = tuple((float(t), float(s)) for t, s in (data.get("buckets") or []))
        return Breakpoints(
            buckets=buckets,
            direction=data.get("direction", "higher_is_better"),
            default=float(data.get("default", 0.0)),
        )


def _validate_weights(weights: Dict[str, float], allowed: List[str], label: str) -> None:
    if not weights:
        raise ValueError(f"{label}: at least one weight is required")
    for name, w in weights.items():
        if name not in allowed:
            raise ValueError(f"{label}: unknown entry {name}")
        if w < 0:
            raise ValueError(f"{label}: weight for {name} cannot be negative")
    if sum(weights.values()) <= 0:
        raise ValueError(f"{label}: weights must sum to more than 0")


# -----------------------------
# RFM
# -----------------------------
@dataclass(frozen=True)
class RFMPolicy:
    recency: Breakpoints = field(
        default_factory=lambda: Breakpoints(
            buckets=((7, 100), (30, 75), (90, 50), (180, 25)),
            direction="lower_is_better",
            default=0,
        )
    )
    frequency: Breakpoints = field(
        default_factory=lambda: Breakpoints(
            buckets=((100, 100), (50, 80), (20, 60), (5, 40), (1, 20)),
        )
    )
    monetary: Breakpoints = field(
        default_factory=lambda: Breakpoints(
            buckets=((5_000_000, 100), (2_000_000, 75), (500_000, 50), (100_000, 25)),
        )
    )
    weights: Dict[str, float] = field(
        default_factory=lambda: {"recency": 1.0, "frequency": 1.0, "monetary": 1.0}
    )
    # lower bound of each segment, evaluated high to low
    thresholds: Dict[str, float] = field(
        default_factory=lambda: {"OCCASIONAL": 25.0, "REGULAR": 50.0, "VIP": 80.0}
    )
    upgrade_min_score: float = 70.0

    def __post_init__(self) -> None:
        _validate_weights(self.weights, RFM_AXES, "rfm.weights")
        if set(self.thresholds) != {"OCCASIONAL", "REGULAR", "VIP"}:
            raise ValueError("rfm.thresholds needs OCCASIONAL, REGULAR and VIP")
        t1, t2, t3 = (self.thresholds[s] for s in ("OCCASIONAL", "REGULAR", "VIP"))
        if not 0 < t1 < t2 < t3 <= 100:
            raise ValueError("rfm.thresholds must be strictly ascending within (0, 100]")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recency": self.recency.to_dict(),
            "frequency": self.frequency.to_dict(),
            "monetary": self.monetary.to_dict(),
            "weights": dict(self.weights),
            "thresholds": dict(self.thresholds),
            "upgrade_min_score": self.upgrade_min_score,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "RFMPolicy":
        data = data or {}
        defaults = RFMPolicy()
        kwargs: Dict[str, Any] = {}
        for axis in RFM_AXES:
            if isinstance(data.get(axis), dict):
                kwargs[axis] = Breakpoints.from_dict(data[axis])
        return RFMPolicy(
            weights={k: float(v) for k, v in (data.get("weights") or defaults.weights).items()},
            thresholds={k: float(v) for k, v in (data.get("thresholds") or defaults.thresholds).items()},
            upgrade_min_score=float(data.get("upgrade_min_score", defaults.upgrade_min_score)),
            **kwargs,
        )


# -----------------------------
# Health
# -----------------------------
@dataclass(frozen=True)
class HealthPolicy:
    weights: Dict[str, float] = field(
        default_factory=lambda: {
            "visit_frequency": 20.0,
            "spending_behavior": 20.0,
            "loyalty_engagement": 20.0,
            "feedback_sentiment": 15.0,
            "communication_responsiveness": 10.0,
            "recency": 15.0,
        }
    )
    # visits in the last 90 days
    visit_frequency: Breakpoints = field(
        default_factory=lambda: Breakpoints(buckets=((12, 100), (8, 80), (4, 60), (2, 40), (1, 20)))
    )
    average_order_value: Breakpoints = field(
        default_factory=lambda: Breakpoints(
            buckets=((300_000, 100), (150_000, 80), (75_000, 60), (1, 40)),
        )
    )
    # spend last 90 days / spend previous 90 days
    spend_trend: Breakpoints = field(
        default_factory=lambda: Breakpoints(buckets=((1.1, 100), (0.9, 70), (0.5, 40)), default=10)
    )
    new_spender_trend_score: float = 70.0
    tier_scores: Dict[str, float] = field(
        default_factory=lambda: {"BRONZE": 25.0, "SILVER": 50.0, "GOLD": 75.0, "PLATINUM": 100.0}
    )
    # redemptions in the last 180 days
    redemption_activity: Breakpoints = field(
        default_factory=lambda: Breakpoints(buckets=((3, 100), (1, 60)), default=20)
    )
    points_balance: Breakpoints = field(
        default_factory=lambda: Breakpoints(buckets=((2000, 100), (1000, 75), (500, 50)), default=25)
    )
    loyalty_mix: Dict[str, float] = field(
        default_factory=lambda: {"tier": 0.5, "redemptions": 0.3, "balance": 0.2}
    )
    recency: Breakpoints = field(
        default_factory=lambda: Breakpoints(
            buckets=((7, 100), (30, 80), (60, 60), (90, 40), (180, 20)),
            direction="lower_is_better",
            default=0,
        )
    )
    neutral_score: float = 50.0
    # (minimum score, level), evaluated high to low; below all -> fallback_level
    levels: Tuple[Tuple[float, str], ...] = ((80.0, "EXCELLENT"), (60.0, "GOOD"), (40.0, "FAIR"))
    fallback_level: str = "POOR"
    trend_sensitivity: float = 5.0
    # health level -> update cadence
    update_frequency: Dict[str, str] = field(
        default_factory=lambda: {"POOR": "DAILY", "FAIR": "WEEKLY"}
    )
    default_update_frequency: str = "MONTHLY"

    def __post_init__(self) -> None:
        _validate_weights(self.weights, HEALTH_COMPONENTS, "health.weights")
        if abs(sum(self.loyalty_mix.values()) - 1.0) > 1e-9:
            raise ValueError("health.loyalty_mix must sum to 1")
        cuts = [c for c, _ in self.levels]
        if cuts != sorted(cuts, reverse=True) or len(set(cuts)) != len(cuts):
            raise ValueError("health.levels must be strictly descending")
        if self.trend_sensitivity < 0:
            raise ValueError("health.trend_sensitivity cannot be negative")
        for freq in list(self.update_frequency.values()) + [self.default_update_frequency]:
            if freq not in UPDATE_INTERVAL_DAYS:
                raise ValueError(f"unknown update frequency: {freq}")

    def level_for(self, score: float) -> str:
        for cut, level in self.levels:
            if score >= cut:
                return level
        return self.fallback_level

    def is_critical(self, level: str) -> bool:
        return level == self.fallback_level

    def needs_attention(self, level: str) -> bool:
        """Lowest named level or the fallback."""
        lowest = self.levels[-1][1] if self.levels else self.fallback_level
        return level in (lowest, self.fallback_level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weights": dict(self.weights),
            "levels": [[c, l] for c, l in self.levels],
            "fallback_level": self.fallback_level,
            "trend_sensitivity": self.trend_sensitivity,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "HealthPolicy":
        data = data or {}
        defaults = HealthPolicy()
        kwargs: Dict[str, Any] = {}
        for name in (
            "visit_frequency",
            "average_order_value",
            "spend_trend",
            "redemption_activity",
            "points_balance",
            "recency",
        ):
            if isinstance(data.get(name), dict):
                kwargs[name] = Breakpoints.from_dict(data[name])
        if data.get("levels"):
            kwargs["levels"] = tuple((float(c), str(l)) for c, l in data["levels"])
        return HealthPolicy(
            weights={k: float(v) for k, v in (data.get("weights") or defaults.weights).items()},
            fallback_level=str(data.get("fallback_level", defaults.fallback_level)),
            trend_sensitivity=float(data.get("trend_sensitivity", defaults.trend_sensitivity)),
            **kwargs,
        )


# -----------------------------
# Risk
# -----------------------------
@dataclass(frozen=True)
class RiskFactor:
    """
    Fires when metric <comparator> threshold. Missing metrics never fire.
    """
    key: str
    metric: str
    comparator: Comparator
    threshold: float
    weight: float
    mitigation: str

    def fires(self, value: Optional[float]) -> bool:
        if value is None:
            return False
        if self.comparator == ">":
            return value > self.threshold
        if self.comparator == ">=":
            return value >= self.threshold
        if self.comparator == "<":
            return value < self.threshold
        return value <= self.threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "metric": self.metric,
            "comparator": self.comparator,
            "threshold": self.threshold,
            "weight": self.weight,
            "mitigation": self.mitigation,
        }


def _default_risk_rules() -> Dict[str, List[RiskFactor]]:
    return {
        "churn": [
            RiskFactor("long_absence", "last_visit_days", ">", 60, 40, "Call and invite the customer back"),
            RiskFactor("declining_spend", "spend_trend_ratio", "<", 0.7, 25, "Offer a targeted discount"),
            RiskFactor("visit_drop", "visit_trend_ratio", "<", 0.5, 20, "Send a we-miss-you campaign"),
            RiskFactor("low_satisfaction", "average_rating", "<", 3, 15, "Review and resolve service issues"),
        ],
        "engagement": [
            RiskFactor("no_redemptions", "redemptions_last_180_days", "<", 1, 30, "Remind the customer to use their points"),
            RiskFactor("unresponsive", "response_rate", "<", 0.2, 30, "Switch to the customer's preferred channel"),
            RiskFactor("no_feedback", "feedback_count", "<", 1, 20, "Request feedback after the next visit"),
            RiskFactor("few_recent_visits", "visits_last_90_days", "<", 2, 20, "Invite to an exclusive event"),
        ],
        "value": [
            RiskFactor("low_order_value", "average_order_value", "<", 75_000, 35, "Promote premium bundles"),
            RiskFactor("declining_spend", "spend_trend_ratio", "<", 0.7, 35, "Offer a targeted discount"),
            RiskFactor("low_lifetime_value", "lifetime_spent", "<", 500_000, 30, "Enroll in a spend-based bonus challenge"),
        ],
    }


@dataclass(frozen=True)
class RiskPolicy:
    rules: Dict[str, List[RiskFactor]] = field(default_factory=_default_risk_rules)
    # (exclusive lower bound, level), evaluated high to low; otherwise LOW
    levels: Tuple[Tuple[float, str], ...] = ((80.0, "CRITICAL"), (60.0, "HIGH"), (30.0, "MEDIUM"))
    fallback_level: str = "LOW"

    def __post_init__(self) -> None:
        for category, factors in self.rules.items():
            if category not in RISK_CATEGORIES:
                raise ValueError(f"unknown risk category: {category}")
            keys = [f.key for f in factors]
            if len(set(keys)) != len(keys):
                raise ValueError(f"risk.{category}: duplicate factor keys")
            for f in factors:
                if f.weight < 0:
                    raise ValueError(f"risk.{category}.{f.key}: weight cannot be negative")
                if f.comparator not in (">", ">=", "<", "<="):
                    raise ValueError(f"risk.{category}.{f.key}: unknown comparator {f.comparator}")

    def level_for(self, probability: float) -> str:
        for bound, level in self.levels:
            if probability > bound:
                return level
        return self.fallback_level

    def is_high(self, level: str) -> bool:
        # top two configured levels (HIGH, CRITICAL by default)
        return level in [lvl for _, lvl in self.levels[:2]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rules": {c: [f.to_dict() for f in fs] for c, fs in self.rules.items()},
            "levels": [[b, l] for b, l in self.levels],
            "fallback_level": self.fallback_level,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "RiskPolicy":
        data = data or {}
        if not data.get("rules"):
            return RiskPolicy()
        rules = {
            category: [
                RiskFactor(
                    key=str(f["key"]),
                    metric=str(f["metric"]),
                    comparator=f["comparator"],
                    threshold=float(f["threshold"]),
                    weight=float(f["weight"]),
                    mitigation=str(f.get("mitigation", "")),
                )
                for f in factors
            ]
            for category, factors in data["rules"].items()
        }
        return RiskPolicy(rules=rules)


@dataclass(frozen=True)
class ScoringPolicy:
    rfm: RFMPolicy = field(default_factory=RFMPolicy)
    health: HealthPolicy = field(default_factory=HealthPolicy)
    risk: RiskPolicy = field(default_factory=RiskPolicy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rfm": self.rfm.to_dict(),
            "health": self.health.to_dict(),
            "risk": self.risk.to_dict(),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ScoringPolicy":
        data = data or {}
        return ScoringPolicy(
            rfm=RFMPolicy.from_dict(data.get("rfm") or {}),
            health=HealthPolicy.from_dict(data.get("health") or {}),
            risk=RiskPolicy.from_dict(data.get("risk") or {}),
        )

    @staticmethod
    def from_file(path: str) -> "ScoringPolicy":
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        return ScoringPolicy.from_dict(data.get("scoring", data))
