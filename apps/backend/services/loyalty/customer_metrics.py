"""
Customer Metric Snapshot
========================

Everything the tier, segmentation, rule and health engines read about a
customer, frozen at one `as_of` instant. Engines never look at the clock;
they only see this snapshot, so identical snapshots give identical results.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from .loyalty_models import CommunicationEvent, Customer, Feedback, LoyaltyAccount, Visit
from .points_ledger import REDEEM_TYPES, LoyaltyTransaction

# used for customers without any visit, matching how reports treat them
NEVER_VISITED_DAYS = 999


@dataclass(frozen=True)
class CustomerMetrics:
    customer_id: str
    as_of: datetime

    lifetime_spent: int = 0
    current_year_spent: int = 0
    current_month_spent: int = 0
    total_visits: int = 0
    current_points: int = 0
    points_earned: int = 0
    points_redeemed: int = 0
    tier_level: str = "BRONZE"
    segment: str = "NEW"

    first_visit_date: Optional[datetime] = None
    last_visit_date: Optional[datetime] = None
    last_visit_days: int = NEVER_VISITED_DAYS
    visits_last_90_days: int = 0
    visits_prev_90_days: int = 0
    spend_last_90_days: int = 0
    spend_prev_90_days: int = 0
    average_visit_interval_days: Optional[float] = None

    redemptions_last_180_days: int = 0
    feedback_count: int = 0
    average_rating: Optional[float] = None
    messages_sent: int = 0
    messages_responded: int = 0

    # -----------------------------
    # Derived ratios (None when there is no baseline)
    # -----------------------------
    @property
    def average_order_value(self) -> int:
        if self.total_visits <= 0:
            return 0
        return self.lifetime_spent // self.total_visits

    @property
    def spend_trend_ratio(self) -> Optional[float]:
        if self.spend_prev_90_days <= 0:
            return None
        return self.spend_last_90_days / self.spend_prev_90_days

    @property
    def visit_trend_ratio(self) -> Optional[float]:
        if self.visits_prev_90_days <= 0:
            return None
        return self.visits_last_90_days / self.visits_prev_90_days

    @property
    def response_rate(self) -> Optional[float]:
        if self.messages_sent <= 0:
            return None
        return self.messages_responded / self.messages_sent

    @property
    def spending_trend(self) -> str:
        ratio = self.spend_trend_ratio
        if ratio is None:
            return "INCREASING" if self.spend_last_90_days > 0 else "STABLE"
        if ratio >= 1.1:
            return "INCREASING"
        if ratio <= 0.9:
            return "DECREASING"
        return "STABLE"

    def value(self, name: str) -> Any:
        """
        Attribute or derived property by snake_case name; None if unknown.
        """
        if name.startswith("_") or name in ("value", "rule_fields", "to_dict"):
            return None
        return getattr(self, name, None)

    def rule_fields(self) -> Dict[str, Any]:
        """
        Field set exposed to custom segment rules, keyed by camelCase name.
        """
        return {
            "lifetimeSpent": self.lifetime_spent,
            "totalVisits": self.total_visits,
            "currentYearSpent": self.current_year_spent,
            "currentMonthSpent": self.current_month_spent,
            "lastVisitDays": self.last_visit_days,
            "currentPoints": self.current_points,
            "pointsEarned": self.points_earned,
            "pointsRedeemed": self.points_redeemed,
            "tierLevel": self.tier_level,
            "segment": self.segment,
            "averageOrderValue": self.average_order_value,
            "averageRating": self.average_rating,
            "visitsLast90Days": self.visits_last_90_days,
        }

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.rule_fields())
        out.update(
            {
                "customerId": self.customer_id,
                "asOf": self.as_of.isoformat(),
                "spendLast90Days": self.spend_last_90_days,
                "spendPrev90Days": self.spend_prev_90_days,
                "visitsPrev90Days": self.visits_prev_90_days,
                "redemptionsLast180Days": self.redemptions_last_180_days,
                "feedbackCount": self.feedback_count,
                "responseRate": self.response_rate,
                "spendingTrend": self.spending_trend,
            }
        )
        return out


def build_customer_metrics(
    *,
    customer: Customer,
    account: LoyaltyAccount,
    as_of: datetime,
    visits: Iterable[Visit] = (),
    transactions: Iterable[LoyaltyTransaction] = (),
    feedback: Iterable[Feedback] = (),
    communications: Iterable[CommunicationEvent] = (),
) -> CustomerMetrics:
    last_90 = as_of - timedelta(days=90)
    prev_90 = as_of - timedelta(days=180)
    last_180 = prev_90

    visits_last = visits_prev = 0
    spend_last = spend_prev = 0
    visit_dates = []
    for v in visits:
        if v.visit_date > as_of:
            continue
        visit_dates.append(v.visit_date)
        if v.visit_date > last_90:
            visits_last += 1
            spend_last += v.amount
        elif v.visit_date > prev_90:
            visits_prev += 1
            spend_prev += v.amount

    interval: Optional[float] = None
    if len(visit_dates) >= 2:
        visit_dates.sort()
        span_days = (visit_dates[-1] - visit_dates[0]).total_seconds() / 86400
        interval = round(span_days / (len(visit_dates) - 1), 2)

    last_visit = account.last_visit_date
    if last_visit is None and visit_dates:
        last_visit = max(visit_dates)
    if last_visit is None:
        last_visit_days = NEVER_VISITED_DAYS
    else:
        last_visit_days = max(0, (as_of - last_visit).days)

    redemptions = sum(
        1
        for t in transactions
        if t.transaction_type in REDEEM_TYPES and last_180 < t.created_at <= as_of
    )

    ratings = [f.rating for f in feedback if f.created_at <= as_of]
    average_rating = round(sum(ratings) / len(ratings), 2) if ratings else None

    sent = responded = 0
    for c in communications:
        if c.sent_at > as_of:
            continue
        sent += 1
        if c.responded:
            responded += 1

    return CustomerMetrics(
        customer_id=customer.id,
        as_of=as_of,
        lifetime_spent=account.lifetime_spent,
        current_year_spent=account.current_year_spent,
        current_month_spent=account.current_month_spent,
        total_visits=account.total_visits,
        current_points=account.current_points,
        points_earned=account.points_earned,
        points_redeemed=account.points_redeemed,
        tier_level=account.tier_level,
        segment=customer.segment,
        first_visit_date=min(visit_dates) if visit_dates else None,
        last_visit_date=last_visit,
        last_visit_days=last_visit_days,
        visits_last_90_days=visits_last,
        visits_prev_90_days=visits_prev,
        spend_last_90_days=spend_last,
        spend_prev_90_days=spend_prev,
        average_visit_interval_days=interval,
        redemptions_last_180_days=redemptions,
        feedback_count=len(ratings),
        average_rating=average_rating,
        messages_sent=sent,
        messages_responded=responded,
    )
