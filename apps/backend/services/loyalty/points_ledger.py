"""
Points Ledger (Canonical)
=========================

Purpose:
- Deterministic points balance math over an append-only transaction log.
- Pure domain logic: no DB, no HTTP.
- Validates every mutation BEFORE anything is written.

Design:
- LoyaltyTransaction is an immutable record; corrections are new offsetting rows.
- Balance is the fold of points_change over a customer's transactions, in
  creation order (sequence). The stored balance must always equal that fold.
- The sign of a transaction is fixed by its type.

Notes:
- How many points a purchase earns is decided by LoyaltyPolicy.
- Atomic append + balance update is the repository's job; the orchestrator
  runs it inside the customer's critical section.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import InsufficientPoints, InvalidAmount, LedgerInconsistency


EARN_TYPES = ("EARNED_PURCHASE", "EARNED_BONUS", "EARNED_REFERRAL", "EARNED_BIRTHDAY")
REDEEM_TYPES = ("REDEEMED_DISCOUNT", "REDEEMED_ITEM")
POSITIVE_TYPES = EARN_TYPES + ("ADJUSTMENT_ADD",)
NEGATIVE_TYPES = REDEEM_TYPES + ("ADJUSTMENT_SUBTRACT", "EXPIRED")
TRANSACTION_TYPES = POSITIVE_TYPES + NEGATIVE_TYPES


def new_transaction_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class LoyaltyTransaction:
    """
    Immutable ledger row.
    points_change:
        + positive => increase balance
        + negative => decrease balance
    """
    id: str
    customer_id: str
    points_change: int
    transaction_type: str
    description: str
    created_at: datetime
    balance_after: int
    sequence: int = 0

    order_reference: Optional[str] = None
    visit_id: Optional[str] = None
    related_amount: Optional[int] = None
    created_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "points_change": int(self.points_change),
            "transaction_type": self.transaction_type,
            "description": self.description,
            "order_reference": self.order_reference,
            "visit_id": self.visit_id,
            "related_amount": self.related_amount,
            "balance_after": int(self.balance_after),
            "sequence": self.sequence,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class LedgerState:
    """
    Computed state from a customer's transactions.
    """
    customer_id: str
    points_balance: int
    points_earned: int
    points_redeemed: int
    points_expired: int
    points_adjusted_out: int
    transaction_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "points_balance": self.points_balance,
            "points_earned": self.points_earned,
            "points_redeemed": self.points_redeemed,
            "points_expired": self.points_expired,
            "points_adjusted_out": self.points_adjusted_out,
            "transaction_count": self.transaction_count,
        }


@dataclass(frozen=True)
class LedgerWrite:
    """
    A validated mutation ready to be committed atomically.
    """
    transaction: LoyaltyTransaction
    new_balance: int
    totals_delta: Dict[str, int] = field(default_factory=dict)


def ordered(transactions: Iterable[LoyaltyTransaction]) -> List[LoyaltyTransaction]:
    return sorted(transactions, key=lambda t: (t.sequence, t.created_at, t.id))


class PointsLedger:
    """
    Canonical ledger reducer and validation.
    """

    # -----------------------------
    # Reduce / compute
    # -----------------------------
    def reduce(self, customer_id: str, transactions: Iterable[LoyaltyTransaction]) -> LedgerState:
        balance = 0
        earned = redeemed = expired = adjusted_out = 0
        count = 0

        for t in ordered(transactions):
            if t.customer_id != customer_id:
                continue
            count += 1
            delta = int(t.points_change)
            balance += delta
            if delta > 0:
                earned += delta
            elif t.transaction_type in REDEEM_TYPES:
                redeemed += -delta
            elif t.transaction_type == "EXPIRED":
                expired += -delta
            else:
                adjusted_out += -delta

        return LedgerState(
            customer_id=customer_id,
            points_balance=balance,
            points_earned=earned,
            points_redeemed=redeemed,
            points_expired=expired,
            points_adjusted_out=adjusted_out,
            transaction_count=count,
        )

    def verify(self, customer_id: str, stored_balance: int, transactions: Iterable[LoyaltyTransaction]) -> LedgerState:
        """
        Replay the log and compare with the stored balance.
        """
        state = self.reduce(customer_id, transactions)
        if state.points_balance != int(stored_balance) or state.points_balance < 0:
            raise LedgerInconsistency(customer_id, int(stored_balance), state.points_balance)
        return state

    # -----------------------------
    # Validation
    # -----------------------------
    def prepare(
        self,
        *,
        customer_id: str,
        current_balance: int,
        delta: int,
        transaction_type: str,
        description: str,
        created_at: datetime,
        sequence: int,
        order_reference: Optional[str] = None,
        visit_id: Optional[str] = None,
        related_amount: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> LedgerWrite:
        """
        Validate a mutation against the balance read inside the critical section
        and build the transaction to append. Raises before anything is written.
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidAmount("Points change must be an integer", points_change=delta)
        if delta == 0:
            raise InvalidAmount("Points change cannot be 0", points_change=delta)
        if transaction_type not in TRANSACTION_TYPES:
            raise InvalidAmount(f"Unknown transaction type: {transaction_type}", transaction_type=transaction_type)
        if transaction_type in POSITIVE_TYPES and delta < 0:
            raise InvalidAmount(f"{transaction_type} requires a positive points change", points_change=delta)
        if transaction_type in NEGATIVE_TYPES and delta > 0:
            raise InvalidAmount(f"{transaction_type} requires a negative points change", points_change=delta)

        if delta < 0 and -delta > current_balance:
            raise InsufficientPoints(customer_id, -delta, current_balance)

        new_balance = current_balance + delta
        txn = LoyaltyTransaction(
            id=new_transaction_id(),
            customer_id=customer_id,
            points_change=delta,
            transaction_type=transaction_type,
            description=description,
            created_at=created_at,
            balance_after=new_balance,
            sequence=sequence,
            order_reference=order_reference,
            visit_id=visit_id,
            related_amount=related_amount,
            created_by=created_by,
        )
        return LedgerWrite(transaction=txn, new_balance=new_balance, totals_delta=self.totals_delta(txn))

    @staticmethod
    def totals_delta(txn: LoyaltyTransaction) -> Dict[str, int]:
        delta = int(txn.points_change)
        if delta > 0:
            return {"points_earned": delta}
        if txn.transaction_type in REDEEM_TYPES:
            return {"points_redeemed": -delta}
        if txn.transaction_type == "EXPIRED":
            return {"points_expired": -delta}
        return {"points_adjusted_out": -delta}

    # -----------------------------
    # Expiry
    # -----------------------------
    def expirable_points(self, transactions: Iterable[LoyaltyTransaction], cutoff: datetime) -> int:
        """
        FIFO: debits consume the oldest earned points first, so whatever was
        earned on or before the cutoff and not yet consumed by any debit is
        still alive and may expire.
        """
        earned_before_cutoff = 0
        debits = 0
        for t in transactions:
            delta = int(t.points_change)
            if delta > 0:
                if t.created_at <= cutoff:
                    earned_before_cutoff += delta
            else:
                debits += -delta
        return max(0, earned_before_cutoff - debits)
