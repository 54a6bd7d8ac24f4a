"""
Loyalty Repository (Supabase/Postgres Adapter)
==============================================

Purpose:
- DB-facing implementation of LoyaltyRepository on a supabase-py client.

Expected tables (canonical names):
1) public.loyalty_customers      id pk, name, phone, birthday, segment, is_active, created_at
2) public.loyalty_accounts       customer_id pk, counters, tier_level, pending_tier_change jsonb,
                                 version int not null default 0, updated_at
3) public.loyalty_transactions   id pk, customer_id, points_change, transaction_type, description,
                                 order_reference, visit_id, related_amount, balance_after,
                                 sequence, created_by, created_at
4) public.loyalty_visits         id pk, customer_id, visit_date, amount, order_reference
5) public.customer_feedback      customer_id, rating, comment, created_at
6) public.customer_communications customer_id, channel, sent_at, responded
7) public.segment_movements      customer_id, from_segment, to_segment, direction, segment_score,
                                 reasons jsonb, moved_at
8) public.custom_segments        id pk, segment_key unique, name, description, rules jsonb, logic, ...
9) public.customer_health_scores customer_id pk, snapshot jsonb, next_update_due, computed_at
10) public.ledger_quarantine     customer_id pk, reason, created_at

Atomic writes:
- public.loyalty_commit_write(p_account jsonb, p_expected_version int,
  p_transaction jsonb, p_visit jsonb) runs in one Postgres transaction:
  UPDATE loyalty_accounts ... WHERE customer_id = .. AND version = p_expected_version,
  then inserts the transaction / visit rows. Returns the updated account row,
  or no rows when the version did not match.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client, create_client

from .errors import ConcurrentModificationRetry, DuplicateSegment, UnknownCustomer
from .health_scoring import HealthScore
from .loyalty_models import (
    CommunicationEvent,
    Customer,
    CustomSegmentRecord,
    Feedback,
    LoyaltyAccount,
    PendingTierChange,
    SegmentMovement,
    Visit,
)
from .loyalty_repository import LoyaltyRepository
from .points_ledger import LoyaltyTransaction, ordered

log = logging.getLogger("loyalty.supabase")


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _rows(r: Any) -> List[Dict[str, Any]]:
    data = getattr(r, "data", None) or []
    if isinstance(data, dict):
        return [data]
    return [x for x in data if isinstance(x, dict)]


class SupabaseLoyaltyRepository(LoyaltyRepository):
    def __init__(
        self,
        supabase_client: Any,
        *,
        table_customers: str = "loyalty_customers",
        table_accounts: str = "loyalty_accounts",
        table_transactions: str = "loyalty_transactions",
        table_visits: str = "loyalty_visits",
        table_feedback: str = "customer_feedback",
        table_communications: str = "customer_communications",
        table_movements: str = "segment_movements",
        table_custom_segments: str = "custom_segments",
        table_health: str = "customer_health_scores",
        table_quarantine: str = "ledger_quarantine",
        commit_rpc: str = "loyalty_commit_write",
    ) -> None:
        self.sb = supabase_client
        self.table_customers = table_customers
        self.table_accounts = table_accounts
        self.table_transactions = table_transactions
        self.table_visits = table_visits
        self.table_feedback = table_feedback
        self.table_communications = table_communications
        self.table_movements = table_movements
        self.table_custom_segments = table_custom_segments
        self.table_health = table_health
        self.table_quarantine = table_quarantine
        self.commit_rpc = commit_rpc

    # -----------------------------
    # Customers / accounts
    # -----------------------------
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        r = self.sb.table(self.table_customers).select("*").eq("id", customer_id).limit(1).execute()
        rows = _rows(r)
        return self._row_to_customer(rows[0]) if rows else None

    async def list_customers(self, active_only: bool = True) -> List[Customer]:
        q = self.sb.table(self.table_customers).select("*")
        if active_only:
            q = q.eq("is_active", True)
        return [self._row_to_customer(x) for x in _rows(q.order("id").execute())]

    async def save_customer(self, customer: Customer) -> Customer:
        r = self.sb.table(self.table_customers).update(customer.to_dict()).eq("id", customer.id).execute()
        if not _rows(r):
            raise UnknownCustomer(customer.id)
        return customer

    async def create_account(self, customer: Customer, account: LoyaltyAccount) -> LoyaltyAccount:
        self.sb.table(self.table_customers).upsert(customer.to_dict()).execute()
        self.sb.table(self.table_accounts).insert(self._account_payload(account)).execute()
        return account

    async def get_account(self, customer_id: str) -> Optional[LoyaltyAccount]:
        r = self.sb.table(self.table_accounts).select("*").eq("customer_id", customer_id).limit(1).execute()
        rows = _rows(r)
        return self._row_to_account(rows[0]) if rows else None

    async def list_accounts(self) -> List[LoyaltyAccount]:
        r = self.sb.table(self.table_accounts).select("*").order("customer_id").execute()
        return [self._row_to_account(x) for x in _rows(r)]

    async def commit_write(
        self,
        account: LoyaltyAccount,
        expected_version: int,
        transaction: Optional[LoyaltyTransaction] = None,
        visit: Optional[Visit] = None,
    ) -> LoyaltyAccount:
        params = {
            "p_account": self._account_payload(replace(account, version=expected_version + 1)),
            "p_expected_version": expected_version,
            "p_transaction": transaction.to_dict() if transaction else None,
            "p_visit": visit.to_dict() if visit else None,
        }
        rows = _rows(self.sb.rpc(self.commit_rpc, params).execute())
        if rows:
            return self._row_to_account(rows[0])

        current = await self.get_account(account.customer_id)
        if current is None:
            raise UnknownCustomer(account.customer_id)
        log.info(
            "version conflict customer=%s expected=%s actual=%s",
            account.customer_id,
            expected_version,
            current.version,
        )
        raise ConcurrentModificationRetry(account.customer_id, expected_version, current.version)

    # -----------------------------
    # Ledger / activity
    # -----------------------------
    async def list_transactions(
        self,
        customer_id: Optional[str] = None,
        *,
        types: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[LoyaltyTransaction]:
        q = self.sb.table(self.table_transactions).select("*")
        if customer_id is not None:
            q = q.eq("customer_id", customer_id)
        if types:
            q = q.in_("transaction_type", list(types))
        if since is not None:
            q = q.gte("created_at", since.isoformat())
        if until is not None:
            q = q.lte("created_at", until.isoformat())
        r = q.order("created_at", desc=False).execute()
        return ordered(self._row_to_transaction(x) for x in _rows(r))

    async def list_visits(self, customer_id: str) -> List[Visit]:
        r = self.sb.table(self.table_visits).select("*").eq("customer_id", customer_id).execute()
        return [
            Visit(
                id=str(x["id"]),
                customer_id=str(x["customer_id"]),
                visit_date=_dt(x["visit_date"]),
                amount=int(x.get("amount") or 0),
                order_reference=x.get("order_reference"),
            )
            for x in _rows(r)
        ]

    async def add_feedback(self, feedback: Feedback) -> None:
        self.sb.table(self.table_feedback).insert(
            {
                "customer_id": feedback.customer_id,
                "rating": feedback.rating,
                "comment": feedback.comment,
                "created_at": feedback.created_at.isoformat(),
            }
        ).execute()

    async def list_feedback(self, customer_id: str) -> List[Feedback]:
        r = self.sb.table(self.table_feedback).select("*").eq("customer_id", customer_id).execute()
        return [
            Feedback(
                customer_id=str(x["customer_id"]),
                rating=int(x["rating"]),
                created_at=_dt(x["created_at"]),
                comment=x.get("comment"),
            )
            for x in _rows(r)
        ]

    async def add_communication(self, event: CommunicationEvent) -> None:
        self.sb.table(self.table_communications).insert(
            {
                "customer_id": event.customer_id,
                "channel": event.channel,
                "sent_at": event.sent_at.isoformat(),
                "responded": event.responded,
            }
        ).execute()

    async def list_communications(self, customer_id: str) -> List[CommunicationEvent]:
        r = self.sb.table(self.table_communications).select("*").eq("customer_id", customer_id).execute()
        return [
            CommunicationEvent(
                customer_id=str(x["customer_id"]),
                sent_at=_dt(x["sent_at"]),
                responded=bool(x.get("responded")),
                channel=str(x.get("channel") or "SMS"),
            )
            for x in _rows(r)
        ]

    # -----------------------------
    # Segments
    # -----------------------------
    async def add_segment_movement(self, movement: SegmentMovement) -> None:
        self.sb.table(self.table_movements).insert(movement.to_dict()).execute()

    async def list_segment_movements(self, limit: int = 50) -> List[SegmentMovement]:
        r = self.sb.table(self.table_movements).select("*").order("moved_at", desc=True).limit(limit).execute()
        return [
            SegmentMovement(
                customer_id=str(x["customer_id"]),
                from_segment=str(x["from_segment"]),
                to_segment=str(x["to_segment"]),
                direction=str(x["direction"]),
                segment_score=float(x.get("segment_score") or 0),
                reasons=list(x.get("reasons") or []),
                moved_at=_dt(x["moved_at"]),
            )
            for x in _rows(r)
        ]

    async def insert_custom_segment(self, record: CustomSegmentRecord) -> CustomSegmentRecord:
        existing = (
            self.sb.table(self.table_custom_segments)
            .select("id")
            .eq("segment_key", record.segment_key)
            .limit(1)
            .execute()
        )
        if _rows(existing):
            raise DuplicateSegment(record.segment_key)
        self.sb.table(self.table_custom_segments).insert(record.to_dict()).execute()
        return record

    async def update_custom_segment(self, record: CustomSegmentRecord) -> CustomSegmentRecord:
        self.sb.table(self.table_custom_segments).update(record.to_dict()).eq("segment_key", record.segment_key).execute()
        return record

    async def list_custom_segments(self) -> List[CustomSegmentRecord]:
        r = self.sb.table(self.table_custom_segments).select("*").order("segment_key").execute()
        return [
            CustomSegmentRecord(
                id=str(x["id"]),
                name=str(x["name"]),
                segment_key=str(x["segment_key"]),
                rules=list(x.get("rules") or []),
                logic=str(x.get("logic") or "AND"),
                description=str(x.get("description") or ""),
                is_active=bool(x.get("is_active", True)),
                customer_count=int(x.get("customer_count") or 0),
                last_calculated_at=_dt(x.get("last_calculated_at")),
                created_by=x.get("created_by"),
                created_at=_dt(x.get("created_at")),
                color_hex=str(x.get("color_hex") or "#6B7280"),
            )
            for x in _rows(r)
        ]

    # -----------------------------
    # Health snapshots
    # -----------------------------
    async def get_health_score(self, customer_id: str) -> Optional[HealthScore]:
        r = self.sb.table(self.table_health).select("snapshot").eq("customer_id", customer_id).limit(1).execute()
        rows = _rows(r)
        if not rows or not isinstance(rows[0].get("snapshot"), dict):
            return None
        return HealthScore.from_dict(rows[0]["snapshot"])

    async def save_health_score(self, score: HealthScore) -> None:
        payload = {
            "customer_id": score.customer_id,
            "snapshot": score.to_dict(),
            "next_update_due": score.next_update_due.isoformat(),
            "computed_at": score.computed_at.isoformat(),
        }
        self.sb.table(self.table_health).upsert(payload).execute()

    async def list_health_scores(self) -> List[HealthScore]:
        r = self.sb.table(self.table_health).select("snapshot").order("customer_id").execute()
        return [HealthScore.from_dict(x["snapshot"]) for x in _rows(r) if isinstance(x.get("snapshot"), dict)]

    # -----------------------------
    # Quarantine
    # -----------------------------
    async def quarantine(self, customer_id: str, reason: str) -> None:
        self.sb.table(self.table_quarantine).upsert({"customer_id": customer_id, "reason": reason}).execute()

    async def release_quarantine(self, customer_id: str) -> bool:
        r = self.sb.table(self.table_quarantine).delete().eq("customer_id", customer_id).execute()
        return bool(_rows(r))

    async def is_quarantined(self, customer_id: str) -> bool:
        r = self.sb.table(self.table_quarantine).select("customer_id").eq("customer_id", customer_id).limit(1).execute()
        return bool(_rows(r))

    async def list_quarantined(self) -> List[str]:
        r = self.sb.table(self.table_quarantine).select("customer_id").order("customer_id").execute()
        return [str(x["customer_id"]) for x in _rows(r)]

    # -----------------------------
    # Row mapping
    # -----------------------------
    @staticmethod
    def _row_to_customer(row: Dict[str, Any]) -> Customer:
        return Customer(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            created_at=_dt(row.get("created_at")),
            phone=row.get("phone"),
            birthday=_date(row.get("birthday")),
            segment=str(row.get("segment") or "NEW"),
            is_active=bool(row.get("is_active", True)),
        )

    @staticmethod
    def _account_payload(account: LoyaltyAccount) -> Dict[str, Any]:
        return account.to_dict()

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> LoyaltyAccount:
        pending = row.get("pending_tier_change")
        return LoyaltyAccount(
            customer_id=str(row["customer_id"]),
            current_points=int(row.get("current_points") or 0),
            lifetime_spent=int(row.get("lifetime_spent") or 0),
            current_year_spent=int(row.get("current_year_spent") or 0),
            current_month_spent=int(row.get("current_month_spent") or 0),
            total_visits=int(row.get("total_visits") or 0),
            tier_level=str(row.get("tier_level") or "BRONZE"),
            last_visit_date=_dt(row.get("last_visit_date")),
            points_earned=int(row.get("points_earned") or 0),
            points_redeemed=int(row.get("points_redeemed") or 0),
            points_expired=int(row.get("points_expired") or 0),
            points_adjusted_out=int(row.get("points_adjusted_out") or 0),
            pending_tier_change=None
            if not isinstance(pending, dict)
            else PendingTierChange(
                customer_id=str(pending["customer_id"]),
                current_tier=str(pending["current_tier"]),
                recommended_tier=str(pending["recommended_tier"]),
                reason=str(pending.get("reason") or ""),
                proposed_at=_dt(pending["proposed_at"]),
            ),
            is_active=bool(row.get("is_active", True)),
            version=int(row.get("version") or 0),
            updated_at=_dt(row.get("updated_at")),
        )

    @staticmethod
    def _row_to_transaction(row: Dict[str, Any]) -> LoyaltyTransaction:
        related = row.get("related_amount")
        return LoyaltyTransaction(
            id=str(row["id"]),
            customer_id=str(row["customer_id"]),
            points_change=int(row.get("points_change", 0)),
            transaction_type=str(row.get("transaction_type")),
            description=str(row.get("description") or ""),
            created_at=_dt(row["created_at"]),
            balance_after=int(row.get("balance_after") or 0),
            sequence=int(row.get("sequence") or 0),
            order_reference=row.get("order_reference"),
            visit_id=row.get("visit_id"),
            related_amount=None if related is None else int(related),
            created_by=row.get("created_by"),
        )


# ---------------------------------------
# Client factory
# ---------------------------------------
def create_supabase_client(url: str, key: str) -> Client:
    """
    Requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY),
    passed in from Settings.
    """
    if not url or not key:
        raise RuntimeError("Supabase not configured: set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY).")
    return create_client(url, key)
