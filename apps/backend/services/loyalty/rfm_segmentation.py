"""
RFM Segmentation Engine
=======================

Purpose:
- Classify a customer into NEW / OCCASIONAL / REGULAR / VIP from recency,
  frequency and monetary sub-scores.
- Pure and idempotent: the same snapshot always yields the same assignment.

Design:
- Sub-scores come from ScoringPolicy breakpoints (0..100).
- segment_score is the weighted average of the three sub-scores.
- reasons list the dominant axis first, then the rest by contribution;
  ties resolve in the fixed axis order recency, frequency, monetary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .customer_metrics import NEVER_VISITED_DAYS, CustomerMetrics
from .scoring_policy import RFM_AXES, SEGMENT_ORDER, RFMPolicy


@dataclass(frozen=True)
class SegmentAssignment:
    customer_id: str
    segment: str
    segment_score: float
    sub_scores: Dict[str, float]
    reasons: List[str]
    computed_at: datetime
    current_segment: str = "NEW"

    @property
    def changed(self) -> bool:
        return self.segment != self.current_segment

    @property
    def direction(self) -> str:
        before = segment_rank(self.current_segment)
        after = segment_rank(self.segment)
        if after > before:
            return "UPGRADE"
        if after < before:
            return "DOWNGRADE"
        return "UNCHANGED"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "segment": self.segment,
            "current_segment": self.current_segment,
            "segment_score": self.segment_score,
            "sub_scores": dict(self.sub_scores),
            "reasons": list(self.reasons),
            "computed_at": self.computed_at.isoformat(),
        }


def segment_rank(segment: str) -> int:
    try:
        return SEGMENT_ORDER.index(segment)
    except ValueError:
        return 0


class RFMSegmentationEngine:
    def __init__(self, policy: RFMPolicy) -> None:
        self.policy = policy

    # -----------------------------
    # Scoring
    # -----------------------------
    def sub_scores(self, metrics: CustomerMetrics) -> Dict[str, float]:
        if metrics.last_visit_days >= NEVER_VISITED_DAYS:
            recency = 0.0
        else:
            recency = self.policy.recency.score(metrics.last_visit_days)
        return {
            "recency": recency,
            "frequency": self.policy.frequency.score(metrics.total_visits),
            "monetary": self.policy.monetary.score(metrics.lifetime_spent),
        }

    def segment_for(self, score: float) -> str:
        for segment in reversed(SEGMENT_ORDER[1:]):
            if score >= self.policy.thresholds[segment]:
                return segment
        return SEGMENT_ORDER[0]

    def classify(self, metrics: CustomerMetrics) -> SegmentAssignment:
        subs = self.sub_scores(metrics)
        weights = {axis: self.policy.weights.get(axis, 0.0) for axis in RFM_AXES}
        total_weight = sum(weights.values())
        contributions = {axis: subs[axis] * weights[axis] for axis in RFM_AXES}
        score = round(sum(contributions.values()) / total_weight, 2)

        return SegmentAssignment(
            customer_id=metrics.customer_id,
            segment=self.segment_for(score),
            segment_score=score,
            sub_scores=subs,
            reasons=self._reasons(metrics, subs, contributions),
            computed_at=metrics.as_of,
            current_segment=metrics.segment,
        )

    # -----------------------------
    # Upgrade candidates
    # -----------------------------
    def upgradeable(
        self,
        assignments: Iterable[SegmentAssignment],
        target_segment: str,
        min_score: Optional[float] = None,
    ) -> List[SegmentAssignment]:
        threshold = self.policy.upgrade_min_score if min_score is None else min_score
        picked = [
            a
            for a in assignments
            if a.current_segment != target_segment
            and a.segment == target_segment
            and a.segment_score >= threshold
        ]
        return sorted(picked, key=lambda a: (-a.segment_score, a.customer_id))

    # -----------------------------
    # Explanations
    # -----------------------------
    @staticmethod
    def _reasons(
        metrics: CustomerMetrics,
        subs: Dict[str, float],
        contributions: Dict[str, float],
    ) -> List[str]:
        order = sorted(RFM_AXES, key=lambda axis: (-contributions[axis], RFM_AXES.index(axis)))
        out = []
        for axis in order:
            if axis == "recency":
                if metrics.last_visit_days >= NEVER_VISITED_DAYS:
                    detail = "no visits yet"
                else:
                    detail = f"last visit {metrics.last_visit_days} days ago"
            elif axis == "frequency":
                detail = f"{metrics.total_visits} visits"
            else:
                detail = f"lifetime spend {metrics.lifetime_spent}"
            out.append(f"{axis}: {detail} (score {subs[axis]:g})")
        return out
