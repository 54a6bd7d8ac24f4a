"""
Segment reports: recommendations after a segmentation run, distribution
insights, and the value / activity breakdowns shown on the analysis page.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .customer_metrics import CustomerMetrics
from .rfm_segmentation import SegmentAssignment
from .scoring_policy import SEGMENT_ORDER

# (segment, lower bound on lifetime spend), high to low
VALUE_SEGMENTS = (
    ("high_value", 5_000_000),
    ("medium_value", 1_000_000),
    ("low_value", 100_000),
    ("minimal_value", 0),
)

# (segment, max days since last visit), low to high; anything older is dormant
ACTIVITY_SEGMENTS = (
    ("very_active", 7),
    ("active", 30),
    ("moderately_active", 90),
    ("inactive", 180),
)


def _pct(part: int, total: int) -> float:
    return part / total * 100 if total else 0.0


def segmentation_recommendations(
    distribution: Dict[str, int],
    upgraded: Sequence[SegmentAssignment],
    downgraded: Sequence[SegmentAssignment],
    metrics_by_id: Dict[str, CustomerMetrics],
) -> List[str]:
    total = sum(distribution.values())
    if not total:
        return []

    out: List[str] = []
    if _pct(distribution.get("VIP", 0), total) < 5:
        out.append("VIP share is low. Design incentive programs that move customers up.")
    if _pct(distribution.get("NEW", 0), total) > 40:
        out.append("Many customers are new. Focus on retention and conversion programs.")
    if len(downgraded) > len(upgraded):
        out.append("More customers moved down than up. Run win-back campaigns.")
    if upgraded:
        spent = [metrics_by_id[a.customer_id].current_year_spent for a in upgraded if a.customer_id in metrics_by_id]
        if spent:
            avg = sum(spent) // len(spent)
            out.append(
                f"Upgraded customers spent {avg} on average this year. Repeat this pattern for other customers."
            )
    if _pct(distribution.get("REGULAR", 0), total) > 50:
        out.append("A large REGULAR base is a good pool for VIP upgrades. Plan targeted campaigns.")
    return out


def segment_insights(counts: Dict[str, int]) -> List[str]:
    total = sum(counts.values())
    return [
        f"{segment}: {counts[segment]} customers ({_pct(counts[segment], total):.1f}%)"
        for segment in SEGMENT_ORDER
        if counts.get(segment)
    ]


def value_segments(snapshots: Sequence[CustomerMetrics]) -> List[Dict[str, Any]]:
    buckets: Dict[str, List[CustomerMetrics]] = {name: [] for name, _ in VALUE_SEGMENTS}
    for m in snapshots:
        for name, floor in VALUE_SEGMENTS:
            if m.lifetime_spent >= floor:
                buckets[name].append(m)
                break
    out = []
    for name, _ in VALUE_SEGMENTS:
        members = buckets[name]
        revenue = sum(m.lifetime_spent for m in members)
        out.append(
            {
                "value_segment": name,
                "customer_count": len(members),
                "total_revenue": revenue,
                "avg_spent": revenue // len(members) if members else 0,
            }
        )
    return out


def activity_segments(snapshots: Sequence[CustomerMetrics]) -> List[Dict[str, Any]]:
    names = [name for name, _ in ACTIVITY_SEGMENTS] + ["dormant"]
    buckets: Dict[str, List[CustomerMetrics]] = {name: [] for name in names}
    for m in snapshots:
        for name, max_days in ACTIVITY_SEGMENTS:
            if m.last_visit_days <= max_days:
                buckets[name].append(m)
                break
        else:
            buckets["dormant"].append(m)
    out = []
    for name in names:
        members = buckets[name]
        n = len(members)
        out.append(
            {
                "activity_segment": name,
                "customer_count": n,
                "avg_visits": round(sum(m.total_visits for m in members) / n, 2) if n else 0,
                "avg_points": round(sum(m.current_points for m in members) / n, 2) if n else 0,
            }
        )
    return out
