"""
Concurrency tests: per-customer serialization, version conflicts and retries.
"""
import asyncio
from dataclasses import replace

import pytest

from apps.backend.services.loyalty.errors import ConcurrentModificationRetry, InsufficientPoints, RetriesExhausted
from apps.backend.services.loyalty.loyalty_repository import InMemoryLoyaltyRepository
from apps.backend.services.loyalty.loyalty_service import LoyaltyService


class ConflictingRepository(InMemoryLoyaltyRepository):
    """Fails the first `conflicts` commits with a version conflict."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.commit_calls = 0

    async def commit_write(self, account, expected_version, transaction=None, visit=None):
        self.commit_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrentModificationRetry(account.customer_id, expected_version, expected_version + 1)
        return await super().commit_write(account, expected_version, transaction, visit)


class ForeignWriterRepository(InMemoryLoyaltyRepository):
    """Another writer touches the row right after the first ledger or visit commit."""

    def __init__(self):
        super().__init__()
        self.commit_calls = 0
        self.bumped = False

    async def commit_write(self, account, expected_version, transaction=None, visit=None):
        self.commit_calls += 1
        committed = await super().commit_write(account, expected_version, transaction, visit)
        if not self.bumped and (transaction is not None or visit is not None):
            self.bumped = True
            self.accounts[committed.customer_id] = replace(committed, version=committed.version + 1)
        return committed


@pytest.mark.asyncio
async def test_concurrent_earn_and_redeem_serialize(service, repo):
    await service.register_customer("c1", "Sara")
    await service.add_points("c1", 20, "seed")

    await asyncio.gather(
        service.add_points("c1", 10, "earn"),
        service.redeem_points("c1", 5, "redeem"),
    )

    assert repo.accounts["c1"].current_points == 25
    assert len(repo.transactions["c1"]) == 3
    assert (await service.replay("c1"))["points_balance"] == 25


@pytest.mark.asyncio
async def test_many_concurrent_writes_keep_invariant(service, repo):
    await service.register_customer("c1", "Sara")
    await service.add_points("c1", 100, "seed")

    ops = [service.add_points("c1", 1, f"earn {i}") for i in range(50)]
    ops += [service.redeem_points("c1", 1, f"redeem {i}") for i in range(20)]
    await asyncio.gather(*ops)

    txns = repo.transactions["c1"]
    assert repo.accounts["c1"].current_points == 130
    assert sorted(t.sequence for t in txns) == list(range(1, len(txns) + 1))
    assert (await service.replay("c1"))["points_balance"] == 130


@pytest.mark.asyncio
async def test_concurrent_redeems_never_overdraw(service, repo):
    await service.register_customer("c1", "Sara")
    await service.add_points("c1", 10, "seed")

    results = await asyncio.gather(
        *[service.redeem_points("c1", 3, f"r{i}") for i in range(5)],
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 2
    assert all(isinstance(f, InsufficientPoints) for f in failures)
    assert repo.accounts["c1"].current_points == 1


@pytest.mark.asyncio
async def test_customers_do_not_block_each_other(service, repo):
    for cid in ("a", "b", "c"):
        await service.register_customer(cid, cid)

    await asyncio.gather(*[service.add_points(cid, 5, "x") for cid in ("a", "b", "c") for _ in range(10)])

    assert {cid: repo.accounts[cid].current_points for cid in ("a", "b", "c")} == {"a": 50, "b": 50, "c": 50}
    assert len(service.locks) == 0


@pytest.mark.asyncio
async def test_version_conflict_is_retried(clock):
    repo = ConflictingRepository(conflicts=0)
    service = LoyaltyService(repo, clock=clock, retry_attempts=3, retry_base_delay=0)
    await service.register_customer("c1", "Sara")
    repo.conflicts = 2

    out = await service.add_points("c1", 10, "earn")

    assert out["loyalty"]["current_points"] == 10
    assert len(repo.transactions["c1"]) == 1


@pytest.mark.asyncio
async def test_retries_exhausted_surfaces_as_retry_later(clock):
    repo = ConflictingRepository(conflicts=0)
    service = LoyaltyService(repo, clock=clock, retry_attempts=3, retry_base_delay=0)
    await service.register_customer("c1", "Sara")
    repo.conflicts = 100

    with pytest.raises(RetriesExhausted) as exc:
        await service.add_points("c1", 10, "earn")

    assert exc.value.status_code == 503
    assert exc.value.details["attempts"] == 3
    assert repo.commit_calls == 3
    assert repo.transactions["c1"] == []


@pytest.mark.asyncio
async def test_store_rejects_stale_version():
    repo = InMemoryLoyaltyRepository()
    service = LoyaltyService(repo, retry_base_delay=0)
    await service.register_customer("c1", "Sara")
    account = repo.accounts["c1"]

    await repo.commit_write(account, account.version)
    with pytest.raises(ConcurrentModificationRetry):
        await repo.commit_write(account, account.version)


@pytest.mark.asyncio
async def test_visit_with_upgrade_commits_once(clock, spend_policy):
    repo = ForeignWriterRepository()
    service = LoyaltyService(repo, policy=spend_policy, clock=clock, retry_attempts=3, retry_base_delay=0)
    await service.register_customer("c1", "Sara")

    out = await service.record_visit("c1", 1_500_000)

    account = repo.accounts["c1"]
    assert out["tier"]["action"] == "UPGRADE"
    assert account.tier_level == "SILVER"
    assert account.total_visits == 1
    assert account.lifetime_spent == 1_500_000
    assert account.current_points == 1500
    assert len(repo.transactions["c1"]) == 1
    assert len(repo.visits["c1"]) == 1
    assert repo.commit_calls == 1


@pytest.mark.asyncio
async def test_conflicting_visit_is_applied_once_after_retry(clock, spend_policy):
    repo = ConflictingRepository(conflicts=0)
    service = LoyaltyService(repo, policy=spend_policy, clock=clock, retry_attempts=3, retry_base_delay=0)
    await service.register_customer("c1", "Sara")
    repo.conflicts = 1

    await service.record_visit("c1", 1_500_000)

    account = repo.accounts["c1"]
    assert account.tier_level == "SILVER"
    assert account.total_visits == 1
    assert account.lifetime_spent == 1_500_000
    assert len(repo.transactions["c1"]) == 1
    assert len(repo.visits["c1"]) == 1
    assert (await service.replay("c1"))["points_balance"] == 1500
