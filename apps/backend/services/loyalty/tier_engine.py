"""
Tier Engine (Canonical)
======================

Purpose:
- Deterministic tier computation from lifetime spend, visit count and
  current-year spend.
- No side effects, no DB access, no HTTP.
- Produces explanation payloads suitable for admin dashboards and audits.

This engine strictly enforces:
- ALL configured thresholds of a tier must hold at the same time.
- Upward-only in normal operation: upgrades apply, downgrades are only
  proposed and wait for an explicit confirm.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from .loyalty_models import PendingTierChange
from .loyalty_policy import TIER_METRICS, LoyaltyPolicy, Tier, tier_rank


@dataclass(frozen=True)
class TierStatus:
    """
    Snapshot of the tier a set of metrics qualifies for.
    """
    current_tier: Tier
    metrics: Dict[str, int]
    next_tier: Optional[Tier]
    is_top_tier: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_tier": {"key": self.current_tier.key, "name": self.current_tier.name},
            "metrics": dict(self.metrics),
            "next_tier": None
            if self.next_tier is None
            else {"key": self.next_tier.key, "name": self.next_tier.name},
            "is_top_tier": self.is_top_tier,
        }


@dataclass(frozen=True)
class TierRecommendation:
    """
    action:
        UPGRADE   -> apply now
        DOWNGRADE -> record as pending, never applied automatically
        NONE      -> nothing to do
    """
    action: str
    current_tier: str
    recommended_tier: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "current_tier": self.current_tier,
            "recommended_tier": self.recommended_tier,
            "reason": self.reason,
        }


class TierEngine:
    """
    Canonical tier computation engine.
    """

    def __init__(self, policy: LoyaltyPolicy) -> None:
        self.policy = policy

    # -----------------------------
    # Core evaluation
    # -----------------------------
    def evaluate(self, metrics: Mapping[str, Any]) -> TierStatus:
        """
        Highest tier whose thresholds are all met. BRONZE when none is.
        """
        normalized = self._normalize(metrics)
        current = self.policy.tiers[0]
        for t in self.policy.tiers:
            if t.is_met_by(normalized):
                current = t
        nxt = self.policy.next_tier(current.key)
        return TierStatus(
            current_tier=current,
            metrics=normalized,
            next_tier=nxt,
            is_top_tier=nxt is None,
        )

    def recommend(self, current_tier: str, metrics: Mapping[str, Any]) -> TierRecommendation:
        status = self.evaluate(metrics)
        target = status.current_tier.key
        before = tier_rank(current_tier)
        after = tier_rank(target)

        if after > before:
            return TierRecommendation("UPGRADE", current_tier, target, f"Qualifies for {status.current_tier.name}")
        if after < before:
            missing = self._missing_for(self.policy.tier(current_tier), status.metrics)
            reason = "No longer meets " + ", ".join(missing) if missing else "Below tier thresholds"
            return TierRecommendation("DOWNGRADE", current_tier, target, reason)
        return TierRecommendation("NONE", current_tier, target, "Tier unchanged")

    # -----------------------------
    # Two-phase downgrade
    # -----------------------------
    @staticmethod
    def propose_tier_change(
        customer_id: str,
        recommendation: TierRecommendation,
        proposed_at: datetime,
    ) -> PendingTierChange:
        return PendingTierChange(
            customer_id=customer_id,
            current_tier=recommendation.current_tier,
            recommended_tier=recommendation.recommended_tier,
            reason=recommendation.reason,
            proposed_at=proposed_at,
        )

    # -----------------------------
    # Requirements / benefits
    # -----------------------------
    def next_tier_requirements(self, tier_key: str, metrics: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Distance to the tier above `tier_key`, only for metrics that tier requires.
        Overall progress is the furthest-along metric.
        """
        nxt = self.policy.next_tier(tier_key)
        if nxt is None:
            return {"next_tier": None, "progress": 100, "requirements": {}}

        normalized = self._normalize(metrics)
        requirements: Dict[str, Any] = {}
        for metric, required in nxt.thresholds().items():
            if required is None:
                continue
            current = normalized[metric]
            if required <= 0:
                progress = 100.0
            else:
                progress = min(100.0, max(0.0, current / required * 100))
            requirements[TIER_METRICS[metric]] = {
                "required": required,
                "current": current,
                "remaining": max(0, required - current),
                "progress": round(progress, 2),
            }

        overall = max((r["progress"] for r in requirements.values()), default=100.0)
        return {"next_tier": nxt.key, "progress": overall, "requirements": requirements}

    def tier_benefits(self, tier_key: str) -> Dict[str, Any]:
        t = self.policy.tier(tier_key)
        out = {"tier": t.key, "name": t.name}
        out.update(t.benefits.to_dict())
        out["birthday_bonus"] = t.birthday_bonus
        return out

    # -----------------------------
    # Advancement preview
    # -----------------------------
    def would_advance_with_purchase(self, metrics: Mapping[str, Any], purchase_amount: int) -> Dict[str, Any]:
        """
        Whether one more purchase of `purchase_amount` (counted as one visit)
        would move the customer up. No state mutation.
        """
        before = self.evaluate(metrics)
        purchase = max(0, int(purchase_amount or 0))
        after_metrics = dict(before.metrics)
        after_metrics["lifetime_spent"] += purchase
        after_metrics["current_year_spent"] += purchase
        after_metrics["total_visits"] += 1
        after = self.evaluate(after_metrics)

        advanced = after.current_tier.rank > before.current_tier.rank
        if advanced:
            explanation = (
                f"A purchase of {purchase} would move the customer "
                f"from {before.current_tier.name} to {after.current_tier.name}."
            )
        elif before.is_top_tier:
            explanation = f"Already in the highest tier ({before.current_tier.name})."
        else:
            explanation = f"A purchase of {purchase} would not yet reach {before.next_tier.name}."

        return {
            "advanced": advanced,
            "before": before.to_dict(),
            "after": after.to_dict(),
            "explanation": explanation,
        }

    # -----------------------------
    # Utilities
    # -----------------------------
    @staticmethod
    def _normalize(metrics: Mapping[str, Any]) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for metric in TIER_METRICS:
            try:
                value = int(metrics.get(metric, 0) or 0)
            except (TypeError, ValueError):
                value = 0
            out[metric] = max(0, value)
        return out

    @staticmethod
    def _missing_for(tier: Tier, metrics: Dict[str, int]) -> list:
        return [
            TIER_METRICS[m]
            for m, required in tier.thresholds().items()
            if required is not None and metrics[m] < required
        ]
