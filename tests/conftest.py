"""
Pytest configuration and fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from apps.backend.services.loyalty.loyalty_policy import LoyaltyPolicy, Tier
from apps.backend.services.loyalty.loyalty_repository import InMemoryLoyaltyRepository
from apps.backend.services.loyalty.loyalty_service import LoyaltyService


START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock so date windows are reproducible."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def spend_only_policy() -> LoyaltyPolicy:
    """Tiers gated on lifetime spend alone: 1,000,000 / 5,000,000 / 15,000,000."""
    return LoyaltyPolicy(
        tiers=[
            Tier(key="BRONZE", name="Bronze", birthday_bonus=200),
            Tier(key="SILVER", name="Silver", min_lifetime_spent=1_000_000, birthday_bonus=500),
            Tier(key="GOLD", name="Gold", min_lifetime_spent=5_000_000, birthday_bonus=1000),
            Tier(key="PLATINUM", name="Platinum", min_lifetime_spent=15_000_000, birthday_bonus=2000),
        ]
    )


@pytest.fixture
def spend_policy() -> LoyaltyPolicy:
    return spend_only_policy()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def repo() -> InMemoryLoyaltyRepository:
    return InMemoryLoyaltyRepository()


@pytest.fixture
def service(repo, clock) -> LoyaltyService:
    return LoyaltyService(repo, clock=clock, retry_base_delay=0)


@pytest.fixture
def client(service):
    from apps.backend.main import app
    from apps.backend.services.loyalty.service_factory import get_loyalty_service

    app.dependency_overrides[get_loyalty_service] = lambda: service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
