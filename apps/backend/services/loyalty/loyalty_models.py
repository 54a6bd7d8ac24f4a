"""
Loyalty Records
===============

Store-facing records. Immutable; updates go through dataclasses.replace so
the repository can compare versions before committing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Customer:
    id: str
    name: str
    created_at: datetime
    phone: Optional[str] = None
    birthday: Optional[date] = None
    segment: str = "NEW"
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "birthday": _iso(self.birthday),
            "segment": self.segment,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class PendingTierChange:
    customer_id: str
    current_tier: str
    recommended_tier: str
    reason: str
    proposed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "current_tier": self.current_tier,
            "recommended_tier": self.recommended_tier,
            "reason": self.reason,
            "proposed_at": _iso(self.proposed_at),
        }


@dataclass(frozen=True)
class LoyaltyAccount:
    """
    One per customer. current_points always equals the ledger fold.
    version increases by one on every committed write.
    """
    customer_id: str
    current_points: int = 0
    lifetime_spent: int = 0
    current_year_spent: int = 0
    current_month_spent: int = 0
    total_visits: int = 0
    tier_level: str = "BRONZE"
    last_visit_date: Optional[datetime] = None

    points_earned: int = 0
    points_redeemed: int = 0
    points_expired: int = 0
    points_adjusted_out: int = 0

    pending_tier_change: Optional[PendingTierChange] = None
    is_active: bool = True
    version: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "current_points": self.current_points,
            "lifetime_spent": self.lifetime_spent,
            "current_year_spent": self.current_year_spent,
            "current_month_spent": self.current_month_spent,
            "total_visits": self.total_visits,
            "tier_level": self.tier_level,
            "last_visit_date": _iso(self.last_visit_date),
            "points_earned": self.points_earned,
            "points_redeemed": self.points_redeemed,
            "points_expired": self.points_expired,
            "points_adjusted_out": self.points_adjusted_out,
            "pending_tier_change": self.pending_tier_change.to_dict() if self.pending_tier_change else None,
            "is_active": self.is_active,
            "version": self.version,
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class Visit:
    id: str
    customer_id: str
    visit_date: datetime
    amount: int
    order_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "visit_date": _iso(self.visit_date),
            "amount": self.amount,
            "order_reference": self.order_reference,
        }


@dataclass(frozen=True)
class Feedback:
    customer_id: str
    rating: int
    created_at: datetime
    comment: Optional[str] = None


@dataclass(frozen=True)
class CommunicationEvent:
    customer_id: str
    sent_at: datetime
    responded: bool = False
    channel: str = "SMS"


@dataclass(frozen=True)
class SegmentMovement:
    customer_id: str
    from_segment: str
    to_segment: str
    direction: str
    segment_score: float
    reasons: List[str]
    moved_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "from_segment": self.from_segment,
            "to_segment": self.to_segment,
            "direction": self.direction,
            "segment_score": self.segment_score,
            "reasons": list(self.reasons),
            "moved_at": _iso(self.moved_at),
        }


@dataclass(frozen=True)
class CustomSegmentRecord:
    id: str
    name: str
    segment_key: str
    rules: List[Any]
    logic: str = "AND"
    description: str = ""
    is_active: bool = True
    customer_count: int = 0
    last_calculated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    color_hex: str = "#6B7280"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "segment_key": self.segment_key,
            "description": self.description,
            "rules": self.rules,
            "logic": self.logic,
            "is_active": self.is_active,
            "customer_count": self.customer_count,
            "last_calculated_at": _iso(self.last_calculated_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "color_hex": self.color_hex,
        }
