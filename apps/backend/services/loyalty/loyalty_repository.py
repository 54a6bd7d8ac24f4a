"""
Loyalty Repository
==================

Purpose:
- Store contract used by LoyaltyService.
- InMemoryLoyaltyRepository: default store for local runs and tests.

Contract highlights:
- commit_write() is the ONLY way an account changes. It appends the ledger
  transaction (if any), records the visit (if any) and replaces the account
  as one unit, and only if the stored version still equals expected_version.
  Otherwise it raises ConcurrentModificationRetry and writes nothing.
- Transactions are append-only; nothing here updates or deletes them.
- Accounts are never deleted; deactivation is a flag.

The Supabase adapter lives in supabase_repository.py.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from .errors import ConcurrentModificationRetry, DuplicateSegment, UnknownCustomer
from .health_scoring import HealthScore
from .loyalty_models import (
    CommunicationEvent,
    Customer,
    CustomSegmentRecord,
    Feedback,
    LoyaltyAccount,
    SegmentMovement,
    Visit,
)
from .points_ledger import LoyaltyTransaction, ordered

log = logging.getLogger("loyalty.repository")

MAX_SEGMENT_MOVEMENTS = 500


class LoyaltyRepository:
    """
    Abstract store. Every method is async so network-backed stores fit.
    """

    # -----------------------------
    # Customers / accounts
    # -----------------------------
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        raise NotImplementedError

    async def list_customers(self, active_only: bool = True) -> List[Customer]:
        raise NotImplementedError

    async def save_customer(self, customer: Customer) -> Customer:
        raise NotImplementedError

    async def create_account(self, customer: Customer, account: LoyaltyAccount) -> LoyaltyAccount:
        raise NotImplementedError

    async def get_account(self, customer_id: str) -> Optional[LoyaltyAccount]:
        raise NotImplementedError

    async def list_accounts(self) -> List[LoyaltyAccount]:
        raise NotImplementedError

    async def commit_write(
        self,
        account: LoyaltyAccount,
        expected_version: int,
        transaction: Optional[LoyaltyTransaction] = None,
        visit: Optional[Visit] = None,
    ) -> LoyaltyAccount:
        raise NotImplementedError

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
        raise NotImplementedError

    async def list_visits(self, customer_id: str) -> List[Visit]:
        raise NotImplementedError

    async def add_feedback(self, feedback: Feedback) -> None:
        raise NotImplementedError

    async def list_feedback(self, customer_id: str) -> List[Feedback]:
        raise NotImplementedError

    async def add_communication(self, event: CommunicationEvent) -> None:
        raise NotImplementedError

    async def list_communications(self, customer_id: str) -> List[CommunicationEvent]:
        raise NotImplementedError

    # -----------------------------
    # Segments
    # -----------------------------
    async def add_segment_movement(self, movement: SegmentMovement) -> None:
        raise NotImplementedError

    async def list_segment_movements(self, limit: int = 50) -> List[SegmentMovement]:
        raise NotImplementedError

    async def insert_custom_segment(self, record: CustomSegmentRecord) -> CustomSegmentRecord:
        """
        Raises DuplicateSegment when segment_key already exists.
        """
        raise NotImplementedError

    async def update_custom_segment(self, record: CustomSegmentRecord) -> CustomSegmentRecord:
        raise NotImplementedError

    async def list_custom_segments(self) -> List[CustomSegmentRecord]:
        raise NotImplementedError

    # -----------------------------
    # Health snapshots (one per customer)
    # -----------------------------
    async def get_health_score(self, customer_id: str) -> Optional[HealthScore]:
        raise NotImplementedError

    async def save_health_score(self, score: HealthScore) -> None:
        raise NotImplementedError

    async def list_health_scores(self) -> List[HealthScore]:
        raise NotImplementedError

    # -----------------------------
    # Quarantine
    # -----------------------------
    async def quarantine(self, customer_id: str, reason: str) -> None:
        raise NotImplementedError

    async def release_quarantine(self, customer_id: str) -> bool:
        raise NotImplementedError

    async def is_quarantined(self, customer_id: str) -> bool:
        raise NotImplementedError

    async def list_quarantined(self) -> List[str]:
        raise NotImplementedError


def _filter_transactions(
    rows: Iterable[LoyaltyTransaction],
    customer_id: Optional[str],
    types: Optional[Iterable[str]],
    since: Optional[datetime],
    until: Optional[datetime],
) -> List[LoyaltyTransaction]:
    wanted: Optional[Set[str]] = set(types) if types else None
    out = []
    for t in rows:
        if customer_id is not None and t.customer_id != customer_id:
            continue
        if wanted is not None and t.transaction_type not in wanted:
            continue
        if since is not None and t.created_at < since:
            continue
        if until is not None and t.created_at > until:
            continue
        out.append(t)
    return out


class InMemoryLoyaltyRepository(LoyaltyRepository):
    """
    Process-local store. commit_write yields to the event loop before the
    version check, so callers that skip the customer lock really do race.
    """

    def __init__(self) -> None:
        self.customers: Dict[str, Customer] = {}
        self.accounts: Dict[str, LoyaltyAccount] = {}
        self.transactions: Dict[str, List[LoyaltyTransaction]] = {}
        self.visits: Dict[str, List[Visit]] = {}
        self.feedback: Dict[str, List[Feedback]] = {}
        self.communications: Dict[str, List[CommunicationEvent]] = {}
        self.movements: List[SegmentMovement] = []
        self.custom_segments: Dict[str, CustomSegmentRecord] = {}
        self.health_scores: Dict[str, HealthScore] = {}
        self.quarantined: Dict[str, str] = {}

    # -----------------------------
    # Customers / accounts
    # -----------------------------
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        return self.customers.get(customer_id)

    async def list_customers(self, active_only: bool = True) -> List[Customer]:
        rows = sorted(self.customers.values(), key=lambda c: c.id)
        return [c for c in rows if c.is_active or not active_only]

    async def save_customer(self, customer: Customer) -> Customer:
        if customer.id not in self.customers:
            raise UnknownCustomer(customer.id)
        self.customers[customer.id] = customer
        return customer

    async def create_account(self, customer: Customer, account: LoyaltyAccount) -> LoyaltyAccount:
        self.customers[customer.id] = customer
        self.accounts[customer.id] = account
        self.transactions.setdefault(customer.id, [])
        self.visits.setdefault(customer.id, [])
        return account

    async def get_account(self, customer_id: str) -> Optional[LoyaltyAccount]:
        return self.accounts.get(customer_id)

    async def list_accounts(self) -> List[LoyaltyAccount]:
        return [self.accounts[k] for k in sorted(self.accounts)]

    async def commit_write(
        self,
        account: LoyaltyAccount,
        expected_version: int,
        transaction: Optional[LoyaltyTransaction] = None,
        visit: Optional[Visit] = None,
    ) -> LoyaltyAccount:
        await asyncio.sleep(0)

        cid = account.customer_id
        stored = self.accounts.get(cid)
        if stored is None:
            raise UnknownCustomer(cid)
        if stored.version != expected_version:
            log.info("version conflict customer=%s expected=%s actual=%s", cid, expected_version, stored.version)
            raise ConcurrentModificationRetry(cid, expected_version, stored.version)

        committed = replace(account, version=expected_version + 1)
        if transaction is not None:
            self.transactions.setdefault(cid, []).append(transaction)
        if visit is not None:
            self.visits.setdefault(cid, []).append(visit)
        self.accounts[cid] = committed
        return committed

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
        if customer_id is not None:
            rows: Iterable[LoyaltyTransaction] = self.transactions.get(customer_id, [])
        else:
            rows = [t for txns in self.transactions.values() for t in txns]
        return ordered(_filter_transactions(rows, customer_id, types, since, until))

    async def list_visits(self, customer_id: str) -> List[Visit]:
        return list(self.visits.get(customer_id, []))

    async def add_feedback(self, feedback: Feedback) -> None:
        self.feedback.setdefault(feedback.customer_id, []).append(feedback)

    async def list_feedback(self, customer_id: str) -> List[Feedback]:
        return list(self.feedback.get(customer_id, []))

    async def add_communication(self, event: CommunicationEvent) -> None:
        self.communications.setdefault(event.customer_id, []).append(event)

    async def list_communications(self, customer_id: str) -> List[CommunicationEvent]:
        return list(self.communications.get(customer_id, []))

    # -----------------------------
    # Segments
    # -----------------------------
    async def add_segment_movement(self, movement: SegmentMovement) -> None:
        self.movements.append(movement)
        if len(self.movements) > MAX_SEGMENT_MOVEMENTS:
            del self.movements[: len(self.movements) - MAX_SEGMENT_MOVEMENTS]

    async def list_segment_movements(self, limit: int = 50) -> List[SegmentMovement]:
        return list(reversed(self.movements))[:limit]

    async def insert_custom_segment(self, record: CustomSegmentRecord) -> CustomSegmentRecord:
        if record.segment_key in self.custom_segments:
            raise DuplicateSegment(record.segment_key)
        self.custom_segments[record.segment_key] = record
        return record

    async def update_custom_segment(self, record: CustomSegmentRecord) -> CustomSegmentRecord:
        self.custom_segments[record.segment_key] = record
        return record

    async def list_custom_segments(self) -> List[CustomSegmentRecord]:
        return [self.custom_segments[k] for k in sorted(self.custom_segments)]

    # -----------------------------
    # Health snapshots
    # -----------------------------
    async def get_health_score(self, customer_id: str) -> Optional[HealthScore]:
        return self.health_scores.get(customer_id)

    async def save_health_score(self, score: HealthScore) -> None:
        self.health_scores[score.customer_id] = score

    async def list_health_scores(self) -> List[HealthScore]:
        return [self.health_scores[k] for k in sorted(self.health_scores)]

    # -----------------------------
    # Quarantine
    # -----------------------------
    async def quarantine(self, customer_id: str, reason: str) -> None:
        self.quarantined[customer_id] = reason

    async def release_quarantine(self, customer_id: str) -> bool:
        return self.quarantined.pop(customer_id, None) is not None

    async def is_quarantined(self, customer_id: str) -> bool:
        return customer_id in self.quarantined

    async def list_quarantined(self) -> List[str]:
        return sorted(self.quarantined)
