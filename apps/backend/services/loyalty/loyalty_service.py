"""
Loyalty Service (Canonical Integration Layer)
=============================================

Purpose:
- Orchestrate points ledger + tier engine + segmentation + health scoring
  on top of a LoyaltyRepository.
- Keep routes thin. Keep domain logic in canonical modules.

This service:
- Runs every write for a customer inside that customer's lock
- Commits ledger writes through the repository's versioned commit and
  retries version conflicts with exponential backoff
- Recomputes tier then segment after every trigger (upgrade applied,
  downgrade only proposed)
- Quarantines a customer whose stored balance disagrees with the replay

No HTTP here. Routes should call this.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .account_locks import CustomerLockRegistry
from .customer_metrics import CustomerMetrics, build_customer_metrics
from .errors import (
    AlreadyAwarded,
    ConcurrentModificationRetry,
    InvalidAmount,
    InvalidRuleDefinition,
    LedgerInconsistency,
    NoPendingTierChange,
    RetriesExhausted,
    UnknownCustomer,
)
from .health_scoring import HealthScoringEngine
from .loyalty_models import (
    CommunicationEvent,
    Customer,
    CustomSegmentRecord,
    Feedback,
    LoyaltyAccount,
    SegmentMovement,
    Visit,
)
from .loyalty_policy import TIER_ORDER, LoyaltyPolicy
from .loyalty_repository import LoyaltyRepository
from .points_ledger import POSITIVE_TYPES, REDEEM_TYPES, LoyaltyTransaction, PointsLedger
from .rfm_segmentation import RFMSegmentationEngine, SegmentAssignment
from .scoring_policy import SEGMENT_ORDER, ScoringPolicy
from .segment_reports import activity_segments, segment_insights, segmentation_recommendations, value_segments
from .segment_rules import SegmentRuleEngine, parse_rules, slugify
from .tier_engine import TierEngine, TierRecommendation

log = logging.getLogger("loyalty.service")

T = TypeVar("T")
Clock = Callable[[], datetime]

RECENT_TRANSACTIONS_LIMIT = 20
TOP_CUSTOMERS_LIMIT = 10
RECENT_ACTIVITY_DAYS = 30


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _require_positive(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidAmount(f"{label} must be a positive integer", **{label: value})
    return value


def _period_spend(account: LoyaltyAccount, now: datetime) -> Tuple[int, int]:
    """
    Year / month counters as of `now`; they read 0 once the period has rolled over.
    """
    last = account.last_visit_date
    if last is None:
        return 0, 0
    year = account.current_year_spent if last.year == now.year else 0
    month = account.current_month_spent if (last.year, last.month) == (now.year, now.month) else 0
    return year, month


class LoyaltyService:
    """
    Canonical orchestration layer.
    """

    def __init__(
        self,
        repo: LoyaltyRepository,
        *,
        policy: Optional[LoyaltyPolicy] = None,
        scoring: Optional[ScoringPolicy] = None,
        clock: Clock = utcnow,
        locks: Optional[CustomerLockRegistry] = None,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.01,
        batch_concurrency: int = 8,
    ) -> None:
        self.repo = repo
        self.policy = policy or LoyaltyPolicy()
        self.scoring = scoring or ScoringPolicy()
        self.clock = clock
        self.locks = locks or CustomerLockRegistry()
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.batch_concurrency = batch_concurrency

        self.ledger = PointsLedger()
        self.tiers = TierEngine(self.policy)
        self.rfm = RFMSegmentationEngine(self.scoring.rfm)
        self.rules = SegmentRuleEngine()
        self.health = HealthScoringEngine(self.scoring)

    def now(self) -> datetime:
        return _aware(self.clock())

    # -----------------------------
    # Critical section + retry
    # -----------------------------
    async def _mutate(self, customer_id: str, op: Callable[[], Awaitable[T]]) -> T:
        """
        Run `op` under the customer's lock. Version conflicts are retried with
        exponential backoff outside the lock.
        """
        for attempt in range(1, self.retry_attempts + 1):
            async with self.locks.hold(customer_id):
                try:
                    return await op()
                except ConcurrentModificationRetry as e:
                    if attempt == self.retry_attempts:
                        log.warning("retries exhausted customer=%s attempts=%s", customer_id, attempt)
                        raise RetriesExhausted(customer_id, attempt) from e
                    log.info("retrying customer=%s attempt=%s", customer_id, attempt)
            await asyncio.sleep(self.retry_base_delay * (2 ** (attempt - 1)))
        raise RetriesExhausted(customer_id, self.retry_attempts)

    async def _run_batch(self, ids: Iterable[str], fn: Callable[[str], Awaitable[T]]) -> List[T]:
        sem = asyncio.Semaphore(self.batch_concurrency)

        async def one(cid: str) -> T:
            async with sem:
                return await fn(cid)

        return list(await asyncio.gather(*(one(cid) for cid in ids)))

    # -----------------------------
    # Loading
    # -----------------------------
    async def _customer(self, customer_id: str) -> Customer:
        customer = await self.repo.get_customer(customer_id)
        if customer is None:
            raise UnknownCustomer(customer_id)
        return customer

    async def _account(self, customer_id: str) -> LoyaltyAccount:
        account = await self.repo.get_account(customer_id)
        if account is None:
            raise UnknownCustomer(customer_id)
        return account

    async def _writable_account(self, customer_id: str) -> LoyaltyAccount:
        account = await self._account(customer_id)
        if await self.repo.is_quarantined(customer_id):
            txns = await self.repo.list_transactions(customer_id)
            replayed = self.ledger.reduce(customer_id, txns).points_balance
            raise LedgerInconsistency(customer_id, account.current_points, replayed)
        return account

    async def _snapshot(self, customer: Customer, account: LoyaltyAccount, now: datetime) -> CustomerMetrics:
        year, month = _period_spend(account, now)
        return build_customer_metrics(
            customer=customer,
            account=replace(account, current_year_spent=year, current_month_spent=month),
            as_of=now,
            visits=await self.repo.list_visits(customer.id),
            transactions=await self.repo.list_transactions(customer.id),
            feedback=await self.repo.list_feedback(customer.id),
            communications=await self.repo.list_communications(customer.id),
        )

    def _tier_metrics(self, account: LoyaltyAccount, now: datetime) -> Dict[str, int]:
        year, _ = _period_spend(account, now)
        return {
            "lifetime_spent": account.lifetime_spent,
            "total_visits": account.total_visits,
            "current_year_spent": year,
        }

    # -----------------------------
    # Versioned commit (caller holds the lock)
    # -----------------------------
    def _tier_changes(self, account: LoyaltyAccount, now: datetime) -> Tuple[Dict[str, Any], TierRecommendation]:
        """
        Account fields implied by the tier recommendation for `account`:
        an upgrade applies, a downgrade is only stored as pending, and a
        NONE clears any pending change.
        """
        rec = self.tiers.recommend(account.tier_level, self._tier_metrics(account, now))
        pending = account.pending_tier_change

        if rec.action == "UPGRADE":
            log.info("tier upgrade customer=%s %s->%s", account.customer_id, rec.current_tier, rec.recommended_tier)
            return {"tier_level": rec.recommended_tier, "pending_tier_change": None}, rec
        if rec.action == "DOWNGRADE":
            if pending is None or pending.recommended_tier != rec.recommended_tier:
                log.info(
                    "tier downgrade proposed customer=%s %s->%s", account.customer_id, rec.current_tier, rec.recommended_tier
                )
                return {"pending_tier_change": self.tiers.propose_tier_change(account.customer_id, rec, now)}, rec
            return {}, rec
        if pending is not None:
            return {"pending_tier_change": None}, rec
        return {}, rec

    async def _commit(
        self,
        updated: LoyaltyAccount,
        expected_version: int,
        transaction: Optional[LoyaltyTransaction] = None,
        visit: Optional[Visit] = None,
    ) -> Tuple[LoyaltyAccount, TierRecommendation]:
        # One versioned write carries the ledger/visit change and the tier outcome.
        changes, rec = self._tier_changes(updated, updated.updated_at or self.now())
        if changes:
            updated = replace(updated, **changes)
        committed = await self.repo.commit_write(updated, expected_version, transaction, visit)
        return committed, rec

    async def _write_points(
        self,
        account: LoyaltyAccount,
        delta: int,
        transaction_type: str,
        description: str,
        *,
        order_reference: Optional[str] = None,
        created_by: Optional[str] = None,
        visit: Optional[Visit] = None,
        related_amount: Optional[int] = None,
        **account_changes: Any,
    ) -> Tuple[LoyaltyAccount, LoyaltyTransaction, TierRecommendation]:
        now = self.now()
        write = self.ledger.prepare(
            customer_id=account.customer_id,
            current_balance=account.current_points,
            delta=delta,
            transaction_type=transaction_type,
            description=description,
            created_at=now,
            sequence=account.version + 1,
            order_reference=order_reference,
            visit_id=visit.id if visit else None,
            related_amount=related_amount,
            created_by=created_by,
        )
        totals = write.totals_delta
        updated = replace(
            account,
            current_points=write.new_balance,
            points_earned=account.points_earned + totals.get("points_earned", 0),
            points_redeemed=account.points_redeemed + totals.get("points_redeemed", 0),
            points_expired=account.points_expired + totals.get("points_expired", 0),
            points_adjusted_out=account.points_adjusted_out + totals.get("points_adjusted_out", 0),
            updated_at=now,
            **account_changes,
        )
        committed, rec = await self._commit(updated, account.version, write.transaction, visit)
        log.info(
            "ledger write customer=%s type=%s delta=%s balance=%s",
            account.customer_id,
            transaction_type,
            delta,
            committed.current_points,
        )
        return committed, write.transaction, rec

    # -----------------------------
    # Segment reconciliation (caller holds the lock)
    # -----------------------------
    async def _reconcile_segment(self, customer: Customer, account: LoyaltyAccount) -> SegmentAssignment:
        metrics = await self._snapshot(customer, account, self.now())
        assignment = self.rfm.classify(metrics)
        if assignment.changed:
            await self.repo.save_customer(replace(customer, segment=assignment.segment))
            await self.repo.add_segment_movement(
                SegmentMovement(
                    customer_id=customer.id,
                    from_segment=assignment.current_segment,
                    to_segment=assignment.segment,
                    direction=assignment.direction,
                    segment_score=assignment.segment_score,
                    reasons=assignment.reasons,
                    moved_at=metrics.as_of,
                )
            )
        return assignment

    async def _after_trigger(self, account: LoyaltyAccount) -> SegmentAssignment:
        customer = await self._customer(account.customer_id)
        return await self._reconcile_segment(customer, account)

    # -----------------------------
    # Customers
    # -----------------------------
    async def register_customer(
        self,
        customer_id: str,
        name: str,
        phone: Optional[str] = None,
        birthday: Optional[date] = None,
    ) -> Dict[str, Any]:
        if not customer_id or not str(customer_id).strip():
            raise InvalidAmount("customer_id is required", customer_id=customer_id)

        async def op() -> Dict[str, Any]:
            existing = await self.repo.get_customer(customer_id)
            if existing is not None:
                account = await self._account(customer_id)
                return {"created": False, "customer": existing.to_dict(), "loyalty": account.to_dict()}
            now = self.now()
            customer = Customer(id=customer_id, name=name, created_at=now, phone=phone, birthday=birthday)
            account = await self.repo.create_account(customer, LoyaltyAccount(customer_id=customer_id, updated_at=now))
            log.info("customer registered customer=%s", customer_id)
            return {"created": True, "customer": customer.to_dict(), "loyalty": account.to_dict()}

        return await self._mutate(customer_id, op)

    async def deactivate_customer(self, customer_id: str) -> Dict[str, Any]:
        async def op() -> Dict[str, Any]:
            customer = await self._customer(customer_id)
            account = await self._account(customer_id)
            await self.repo.save_customer(replace(customer, is_active=False))
            account = await self.repo.commit_write(
                replace(account, is_active=False, updated_at=self.now()), account.version
            )
            return {"customer_id": customer_id, "is_active": False, "loyalty": account.to_dict()}

        return await self._mutate(customer_id, op)

    async def record_feedback(self, customer_id: str, rating: int, comment: Optional[str] = None) -> Dict[str, Any]:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidAmount("rating must be an integer between 1 and 5", rating=rating)
        await self._customer(customer_id)
        fb = Feedback(customer_id=customer_id, rating=rating, created_at=self.now(), comment=comment)
        await self.repo.add_feedback(fb)
        return {"customer_id": customer_id, "rating": rating}

    async def record_communication(self, customer_id: str, responded: bool = False, channel: str = "SMS") -> Dict[str, Any]:
        await self._customer(customer_id)
        event = CommunicationEvent(customer_id=customer_id, sent_at=self.now(), responded=bool(responded), channel=channel)
        await self.repo.add_communication(event)
        return {"customer_id": customer_id, "responded": event.responded, "channel": channel}

    # -----------------------------
    # Points
    # -----------------------------
    async def add_points(
        self,
        customer_id: str,
        points: int,
        description: str,
        transaction_type: str = "EARNED_BONUS",
        order_reference: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        _require_positive(points, "points")
        if transaction_type not in POSITIVE_TYPES:
            raise InvalidAmount(f"{transaction_type} is not a point-earning type", transaction_type=transaction_type)

        async def op() -> Dict[str, Any]:
            account = await self._writable_account(customer_id)
            account, txn, _ = await self._write_points(
                account,
                points,
                transaction_type,
                description,
                order_reference=order_reference,
                created_by=created_by,
            )
            await self._after_trigger(account)
            return {"loyalty": account.to_dict(), "transaction": txn.to_dict()}

        return await self._mutate(customer_id, op)

    async def redeem_points(
        self,
        customer_id: str,
        points_to_redeem: int,
        description: str,
        order_reference: Optional[str] = None,
        transaction_type: str = "REDEEMED_DISCOUNT",
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        _require_positive(points_to_redeem, "points_to_redeem")
        if transaction_type not in REDEEM_TYPES:
            raise InvalidAmount(f"{transaction_type} is not a redemption type", transaction_type=transaction_type)

        async def op() -> Dict[str, Any]:
            account = await self._writable_account(customer_id)
            account, txn, _ = await self._write_points(
                account,
                -points_to_redeem,
                transaction_type,
                description,
                order_reference=order_reference,
                created_by=created_by,
            )
            await self._after_trigger(account)
            return {"loyalty": account.to_dict(), "transaction": txn.to_dict()}

        return await self._mutate(customer_id, op)

    async def adjust_points(
        self,
        customer_id: str,
        delta: int,
        description: str,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidAmount("delta must be a non-zero integer", delta=delta)
        transaction_type = "ADJUSTMENT_ADD" if delta > 0 else "ADJUSTMENT_SUBTRACT"

        async def op() -> Dict[str, Any]:
            account = await self._writable_account(customer_id)
            account, txn, _ = await self._write_points(account, delta, transaction_type, description, created_by=created_by)
            await self._after_trigger(account)
            return {"loyalty": account.to_dict(), "transaction": txn.to_dict()}

        return await self._mutate(customer_id, op)

    async def record_visit(
        self,
        customer_id: str,
        amount: int,
        visit_date: Optional[datetime] = None,
        order_reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Purchase visit: spend + visit counters, EARNED_PURCHASE points at the
        tier the customer held before the visit, then tier and segment.
        """
        _require_positive(amount, "amount")

        async def op() -> Dict[str, Any]:
            account = await self._writable_account(customer_id)
            when = _aware(visit_date) if visit_date is not None else self.now()
            visit = Visit(
                id=uuid.uuid4().hex,
                customer_id=customer_id,
                visit_date=when,
                amount=amount,
                order_reference=order_reference,
            )

            last = account.last_visit_date
            year_spent, month_spent = account.current_year_spent, account.current_month_spent
            if last is None or when.year > last.year:
                year_spent = amount
            elif when.year == last.year:
                year_spent += amount
            if last is None or (when.year, when.month) > (last.year, last.month):
                month_spent = amount
            elif (when.year, when.month) == (last.year, last.month):
                month_spent += amount

            changes = {
                "lifetime_spent": account.lifetime_spent + amount,
                "total_visits": account.total_visits + 1,
                "current_year_spent": year_spent,
                "current_month_spent": month_spent,
                "last_visit_date": when if last is None else max(last, when),
            }

            points = self.policy.points_for_purchase(amount, account.tier_level)
            txn: Optional[LoyaltyTransaction] = None
            if points > 0:
                account, txn, rec = await self._write_points(
                    account,
                    points,
                    "EARNED_PURCHASE",
                    f"Purchase of {amount}",
                    order_reference=order_reference,
                    visit=visit,
                    related_amount=amount,
                    **changes,
                )
            else:
                account, rec = await self._commit(
                    replace(account, updated_at=self.now(), **changes), account.version, None, visit
                )

            assignment = await self._after_trigger(account)
            return {
                "loyalty": account.to_dict(),
                "visit": visit.to_dict(),
                "transaction": txn.to_dict() if txn else None,
                "points_earned": points,
                "tier": rec.to_dict(),
                "segment": assignment.segment,
            }

        return await self._mutate(customer_id, op)

    async def award_birthday_bonus(self, customer_id: str, created_by: Optional[str] = None) -> Dict[str, Any]:
        async def op() -> Dict[str, Any]:
            account = await self._writable_account(customer_id)
            now = self.now()
            start = datetime(now.year, 1, 1, tzinfo=now.tzinfo)
            already = await self.repo.list_transactions(customer_id, types=["EARNED_BIRTHDAY"], since=start)
            if already:
                raise AlreadyAwarded(customer_id, now.year)
            bonus = self.policy.birthday_bonus(account.tier_level)
            account, txn, _ = await self._write_points(
                account,
                bonus,
                "EARNED_BIRTHDAY",
                f"Birthday bonus - {bonus} points",
                created_by=created_by,
            )
            await self._after_trigger(account)
            return {"loyalty": account.to_dict(), "transaction": txn.to_dict()}

        return await self._mutate(customer_id, op)

    async def expire_old_points(self, days_to_expire: Optional[int] = None) -> Dict[str, Any]:
        """
        FIFO expiry of points earned before the cutoff and not yet consumed.
        Running it twice for the same cutoff expires nothing the second time.
        """
        days = self.policy.points_rule.points_expiry_days if days_to_expire is None else days_to_expire
        if days is None:
            return {"customers_affected": 0, "points_expired": 0, "cutoff": None}
        _require_positive(days, "days_to_expire")
        cutoff = self.now() - timedelta(days=days)

        async def expire_one(customer_id: str) -> int:
            async def op() -> int:
                account = await self._writable_account(customer_id)
                txns = await self.repo.list_transactions(customer_id)
                amount = min(self.ledger.expirable_points(txns, cutoff), account.current_points)
                if amount <= 0:
                    return 0
                await self._write_points(
                    account,
                    -amount,
                    "EXPIRED",
                    f"Expired {amount} points earned before {cutoff.date().isoformat()}",
                )
                return amount

            try:
                return await self._mutate(customer_id, op)
            except LedgerInconsistency:
                log.error("expiry skipped for quarantined customer=%s", customer_id)
                return 0

        accounts = await self.repo.list_accounts()
        results = await self._run_batch([a.customer_id for a in accounts], expire_one)
        expired = [r for r in results if r > 0]
        log.info("points expiry cutoff=%s customers=%s points=%s", cutoff.isoformat(), len(expired), sum(expired))
        return {"customers_affected": len(expired), "points_expired": sum(expired), "cutoff": cutoff.isoformat()}

    # -----------------------------
    # Ledger audit
    # -----------------------------
    async def replay(self, customer_id: str) -> Dict[str, Any]:
        async with self.locks.hold(customer_id):
            account = await self._account(customer_id)
            txns = await self.repo.list_transactions(customer_id)
            try:
                state = self.ledger.verify(customer_id, account.current_points, txns)
            except LedgerInconsistency as e:
                await self.repo.quarantine(customer_id, e.message)
                log.error(
                    "ledger mismatch customer=%s stored=%s replayed=%s; customer quarantined",
                    customer_id,
                    e.details.get("stored_balance"),
                    e.details.get("replayed_balance"),
                )
                raise
        out = state.to_dict()
        out.update({"stored_balance": account.current_points, "consistent": True})
        return out

    async def release_quarantine(self, customer_id: str) -> Dict[str, Any]:
        async with self.locks.hold(customer_id):
            await self._account(customer_id)
            released = await self.repo.release_quarantine(customer_id)
        if released:
            log.warning("quarantine released customer=%s", customer_id)
        return {"customer_id": customer_id, "released": released}

    async def verify_all_ledgers(self) -> Dict[str, Any]:
        """
        Replay every account; used by the health probe.
        """
        async def check(customer_id: str) -> Optional[str]:
            try:
                await self.replay(customer_id)
                return None
            except LedgerInconsistency:
                return customer_id

        accounts = await self.repo.list_accounts()
        bad = [c for c in await self._run_batch([a.customer_id for a in accounts], check) if c]
        return {
            "checked": len(accounts),
            "inconsistent": sorted(bad),
            "quarantined": await self.repo.list_quarantined(),
        }

    # -----------------------------
    # Tier two-phase changes
    # -----------------------------
    async def propose_tier_change(self, customer_id: str) -> Dict[str, Any]:
        async def op() -> Dict[str, Any]:
            account = await self._account(customer_id)
            now = self.now()
            changes, rec = self._tier_changes(account, now)
            if changes:
                account = await self.repo.commit_write(replace(account, updated_at=now, **changes), account.version)
            pending = account.pending_tier_change
            return {
                "recommendation": rec.to_dict(),
                "pending_tier_change": pending.to_dict() if pending else None,
                "loyalty": account.to_dict(),
            }

        return await self._mutate(customer_id, op)

    async def confirm_tier_change(self, customer_id: str, confirmed_by: Optional[str] = None) -> Dict[str, Any]:
        async def op() -> Dict[str, Any]:
            account = await self._account(customer_id)
            pending = account.pending_tier_change
            if pending is None:
                raise NoPendingTierChange(customer_id)
            account = await self.repo.commit_write(
                replace(account, tier_level=pending.recommended_tier, pending_tier_change=None, updated_at=self.now()),
                account.version,
            )
            log.info(
                "tier change confirmed customer=%s %s->%s by=%s",
                customer_id,
                pending.current_tier,
                pending.recommended_tier,
                confirmed_by,
            )
            return {"applied": pending.to_dict(), "loyalty": account.to_dict()}

        return await self._mutate(customer_id, op)

    async def dismiss_tier_change(self, customer_id: str) -> Dict[str, Any]:
        async def op() -> Dict[str, Any]:
            account = await self._account(customer_id)
            pending = account.pending_tier_change
            if pending is None:
                raise NoPendingTierChange(customer_id)
            account = await self.repo.commit_write(
                replace(account, pending_tier_change=None, updated_at=self.now()), account.version
            )
            return {"dismissed": pending.to_dict(), "loyalty": account.to_dict()}

        return await self._mutate(customer_id, op)

    # -----------------------------
    # Reads
    # -----------------------------
    async def get_customer_loyalty_details(self, customer_id: str) -> Dict[str, Any]:
        customer = await self._customer(customer_id)
        account = await self._account(customer_id)
        txns = await self.repo.list_transactions(customer_id)
        recent = list(reversed(txns))[:RECENT_TRANSACTIONS_LIMIT]
        metrics = self._tier_metrics(account, self.now())
        return {
            "customer": customer.to_dict(),
            "loyalty": account.to_dict(),
            "transactions": [t.to_dict() for t in recent],
            "tier_benefits": self.tiers.tier_benefits(account.tier_level),
            "next_tier_requirements": self.tiers.next_tier_requirements(account.tier_level, metrics),
            "pending_tier_change": account.pending_tier_change.to_dict() if account.pending_tier_change else None,
        }

    async def preview_purchase(self, customer_id: str, amount: int) -> Dict[str, Any]:
        _require_positive(amount, "amount")
        account = await self._account(customer_id)
        preview = self.tiers.would_advance_with_purchase(self._tier_metrics(account, self.now()), amount)
        preview["points_to_earn"] = self.policy.points_for_purchase(amount, account.tier_level)
        return preview

    async def get_loyalty_transactions(
        self,
        customer_id: Optional[str] = None,
        transaction_type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(500, int(limit)))
        txns = await self.repo.list_transactions(
            customer_id,
            types=[transaction_type] if transaction_type else None,
            since=_aware(since) if since else None,
            until=_aware(until) if until else None,
        )
        newest_first = sorted(txns, key=lambda t: (t.created_at, t.sequence, t.id), reverse=True)
        start = (page - 1) * limit
        total = len(newest_first)
        return {
            "transactions": [t.to_dict() for t in newest_first[start : start + limit]],
            "pagination": {
                "current_page": page,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
                "limit": limit,
            },
        }

    async def get_loyalty_statistics(
        self,
        tier: Optional[str] = None,
        segment: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        customers = {c.id: c for c in await self.repo.list_customers(active_only=True)}
        accounts = [
            a
            for a in await self.repo.list_accounts()
            if a.customer_id in customers
            and (tier is None or a.tier_level == tier)
            and (segment is None or customers[a.customer_id].segment == segment)
        ]
        ids = {a.customer_id for a in accounts}

        active_points = sum(a.current_points for a in accounts)
        window_start = _aware(since) if since else self.now() - timedelta(days=RECENT_ACTIVITY_DAYS)
        recent = [t for t in await self.repo.list_transactions(since=window_start) if t.customer_id in ids]

        top = sorted(accounts, key=lambda a: (-a.current_points, a.customer_id))[:TOP_CUSTOMERS_LIMIT]
        return {
            "total_customers": len(accounts),
            "total_points_issued": sum(a.points_earned for a in accounts),
            "total_points_redeemed": sum(a.points_redeemed for a in accounts),
            "active_points": active_points,
            "average_points_per_customer": round(active_points / len(accounts), 2) if accounts else 0,
            "top_loyalty_customers": [
                {
                    "customer_id": a.customer_id,
                    "name": customers[a.customer_id].name,
                    "phone": customers[a.customer_id].phone,
                    "current_points": a.current_points,
                    "tier_level": a.tier_level,
                }
                for a in top
            ],
            "tier_distribution": {t: sum(1 for a in accounts if a.tier_level == t) for t in TIER_ORDER},
            "recent_transactions_count": len(recent),
        }

    # -----------------------------
    # Segmentation
    # -----------------------------
    async def _active_snapshots(self) -> List[Tuple[Customer, LoyaltyAccount, CustomerMetrics]]:
        now = self.now()
        out = []
        for customer in await self.repo.list_customers(active_only=True):
            account = await self.repo.get_account(customer.id)
            if account is None:
                continue
            out.append((customer, account, await self._snapshot(customer, account, now)))
        return out

    async def update_all_customer_segments(self) -> Dict[str, Any]:
        customers = await self.repo.list_customers(active_only=True)

        async def one(customer_id: str) -> Optional[Tuple[SegmentAssignment, CustomerMetrics]]:
            async def op() -> Optional[Tuple[SegmentAssignment, CustomerMetrics]]:
                customer = await self._customer(customer_id)
                account = await self.repo.get_account(customer_id)
                if account is None:
                    return None
                assignment = await self._reconcile_segment(customer, account)
                return assignment, await self._snapshot(customer, account, assignment.computed_at)

            return await self._mutate(customer_id, op)

        results = [r for r in await self._run_batch([c.id for c in customers], one) if r]
        distribution = {s: 0 for s in SEGMENT_ORDER}
        upgraded: List[SegmentAssignment] = []
        downgraded: List[SegmentAssignment] = []
        metrics_by_id: Dict[str, CustomerMetrics] = {}
        for assignment, metrics in results:
            distribution[assignment.segment] = distribution.get(assignment.segment, 0) + 1
            metrics_by_id[assignment.customer_id] = metrics
            if assignment.direction == "UPGRADE":
                upgraded.append(assignment)
            elif assignment.direction == "DOWNGRADE":
                downgraded.append(assignment)

        upgraded.sort(key=lambda a: a.customer_id)
        downgraded.sort(key=lambda a: a.customer_id)
        log.info("segments refreshed total=%s up=%s down=%s", len(results), len(upgraded), len(downgraded))
        return {
            "total_customers": len(results),
            "segment_distribution": distribution,
            "movements": {
                "upgraded": [a.to_dict() for a in upgraded],
                "downgraded": [a.to_dict() for a in downgraded],
                "unchanged": len(results) - len(upgraded) - len(downgraded),
            },
            "recommendations": segmentation_recommendations(distribution, upgraded, downgraded, metrics_by_id),
        }

    async def get_segment_analysis(self) -> Dict[str, Any]:
        rows = await self._active_snapshots()
        distribution: Dict[str, Dict[str, int]] = {}
        for customer, account, _ in rows:
            bucket = distribution.setdefault(customer.segment, {"count": 0, "total_value": 0})
            bucket["count"] += 1
            bucket["total_value"] += account.lifetime_spent

        snapshots = [m for _, _, m in rows]
        return {
            "segment_distribution": distribution,
            "recent_movements": [m.to_dict() for m in await self.repo.list_segment_movements()],
            "value_segments": value_segments(snapshots),
            "activity_segments": activity_segments(snapshots),
            "insights": segment_insights({s: v["count"] for s, v in distribution.items()}),
        }

    async def get_customers_by_segment(self, segment: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(500, int(limit)))
        rows = [r for r in await self._active_snapshots() if r[0].segment == segment]
        rows.sort(key=lambda r: (-r[1].lifetime_spent, -r[1].total_visits, r[0].id))

        start = (page - 1) * limit
        items = []
        for customer, account, metrics in rows[start : start + limit]:
            assignment = self.rfm.classify(metrics)
            items.append(
                {
                    "customer": customer.to_dict(),
                    "loyalty": account.to_dict(),
                    "segment_analysis": {
                        "score": assignment.segment_score,
                        "reasons": assignment.reasons,
                        "last_visit_days": metrics.last_visit_days,
                        "average_order_value": metrics.average_order_value,
                    },
                }
            )
        total = len(rows)
        return {
            "customers": items,
            "pagination": {
                "current_page": page,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
                "limit": limit,
            },
        }

    async def get_upgradeable_customers(self, target_segment: str, min_score: Optional[float] = None) -> List[Dict[str, Any]]:
        rows = await self._active_snapshots()
        by_id = {c.id: c for c, _, _ in rows}
        assignments = [self.rfm.classify(m) for _, _, m in rows]
        picked = self.rfm.upgradeable(assignments, target_segment, min_score)
        return [
            {
                "customer": by_id[a.customer_id].to_dict(),
                "upgrade_score": a.segment_score,
                "assignment": a.to_dict(),
            }
            for a in picked
        ]

    # -----------------------------
    # Custom segments
    # -----------------------------
    async def create_custom_segment(
        self,
        name: str,
        rules: Any,
        logic: str = "AND",
        description: str = "",
        color_hex: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        parse_rules(rules, logic, strict=True)
        key = slugify(name)
        if not key:
            raise InvalidRuleDefinition("name must contain letters or digits", "name")

        now = self.now()
        record = CustomSegmentRecord(
            id=uuid.uuid4().hex,
            name=name.strip(),
            segment_key=key,
            rules=rules if isinstance(rules, list) else [rules],
            logic=str(logic or "AND").upper(),
            description=description or "",
            created_by=created_by,
            created_at=now,
            color_hex=color_hex or "#6B7280",
        )
        await self.repo.insert_custom_segment(record)

        snapshots = [m for _, _, m in await self._active_snapshots()]
        record = replace(record, customer_count=self.rules.count_matches(record, snapshots), last_calculated_at=now)
        await self.repo.update_custom_segment(record)
        log.info("custom segment created key=%s count=%s", key, record.customer_count)
        return {"id": record.id, "segment_key": key, "customer_count": record.customer_count}

    async def list_custom_segments(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in await self.repo.list_custom_segments()]

    async def evaluate_custom_segments(self, customer_id: str) -> Dict[str, Any]:
        customer = await self._customer(customer_id)
        account = await self._account(customer_id)
        metrics = await self._snapshot(customer, account, self.now())
        definitions = await self.repo.list_custom_segments()
        return {"customer_id": customer_id, "segments": self.rules.matching_segments(definitions, metrics)}

    async def refresh_custom_segment_counts(self) -> Dict[str, Any]:
        now = self.now()
        snapshots = [m for _, _, m in await self._active_snapshots()]
        counts: Dict[str, int] = {}
        for record in await self.repo.list_custom_segments():
            updated = replace(record, customer_count=self.rules.count_matches(record, snapshots), last_calculated_at=now)
            await self.repo.update_custom_segment(updated)
            counts[record.segment_key] = updated.customer_count
        return {"segments": counts, "calculated_at": now.isoformat()}

    # -----------------------------
    # Health
    # -----------------------------
    async def get_customer_health_score(self, customer_id: str) -> Dict[str, Any]:
        async with self.locks.hold(customer_id):
            customer = await self._customer(customer_id)
            account = await self._account(customer_id)
            metrics = await self._snapshot(customer, account, self.now())
            previous = await self.repo.get_health_score(customer_id)
            score = self.health.score(metrics, previous)
            await self.repo.save_health_score(score)
        return score.to_dict()

    async def get_batch_health_scores(self, customer_ids: List[str]) -> Dict[str, Any]:
        async def one(customer_id: str) -> Optional[Dict[str, Any]]:
            try:
                return await self.get_customer_health_score(customer_id)
            except UnknownCustomer:
                return None

        unique = list(dict.fromkeys(customer_ids))
        results = await self._run_batch(unique, one)
        return {
            "scores": [r for r in results if r is not None],
            "missing": [cid for cid, r in zip(unique, results) if r is None],
        }

    async def refresh_all_health_scores(self) -> Dict[str, Any]:
        customers = await self.repo.list_customers(active_only=True)
        await self._run_batch([c.id for c in customers], self.get_customer_health_score)
        log.info("health scores refreshed count=%s", len(customers))
        return {"refreshed": len(customers)}

    async def get_health_scoring_metrics(self) -> Dict[str, Any]:
        return self.health.fleet_metrics(await self.repo.list_health_scores())

    async def get_health_score_alerts(self) -> List[Dict[str, Any]]:
        names = {c.id: c.name for c in await self.repo.list_customers(active_only=False)}
        return self.health.alerts(await self.repo.list_health_scores(), names)

    async def get_customers_needing_health_updates(self) -> List[str]:
        return self.health.needing_update(await self.repo.list_health_scores(), self.now())
