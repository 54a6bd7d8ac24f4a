"""
Wiring: Settings -> repository + policies -> LoyaltyService.

Routes depend on get_loyalty_service; tests override it with
app.dependency_overrides.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional, Tuple

from apps.backend.services.settings import Settings, get_settings

from .loyalty_policy import LoyaltyPolicy
from .loyalty_repository import InMemoryLoyaltyRepository, LoyaltyRepository
from .loyalty_service import LoyaltyService
from .scoring_policy import ScoringPolicy
from .supabase_repository import SupabaseLoyaltyRepository, create_supabase_client

log = logging.getLogger("loyalty.factory")


def build_repository(settings: Settings) -> LoyaltyRepository:
    if settings.store == "supabase":
        client = create_supabase_client(settings.supabase_url or "", settings.supabase_key or "")
        log.info("using supabase loyalty store")
        return SupabaseLoyaltyRepository(client)
    log.info("using in-memory loyalty store")
    return InMemoryLoyaltyRepository()


def load_policies(path: Optional[str]) -> Tuple[LoyaltyPolicy, ScoringPolicy]:
    """
    One JSON file may carry both a "loyalty" and a "scoring" section.
    Missing sections fall back to the built-in defaults.
    """
    if not path:
        return LoyaltyPolicy(), ScoringPolicy()
    loyalty = LoyaltyPolicy.from_file(path)
    scoring = ScoringPolicy.from_file(path)
    log.info("policies loaded from %s", path)
    return loyalty, scoring


def build_loyalty_service(settings: Settings, repo: Optional[LoyaltyRepository] = None) -> LoyaltyService:
    policy, scoring = load_policies(settings.policy_path)
    return LoyaltyService(
        repo or build_repository(settings),
        policy=policy,
        scoring=scoring,
        retry_attempts=settings.retry_attempts,
        retry_base_delay=settings.retry_base_delay,
        batch_concurrency=settings.batch_concurrency,
    )


@lru_cache(maxsize=1)
def get_loyalty_service() -> LoyaltyService:
    return build_loyalty_service(get_settings())
