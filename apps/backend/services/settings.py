import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


def is_enabled(flag: str, default: bool = False) -> bool:
    return os.getenv(flag, str(default)).lower() == "true"


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    store: str = "memory"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    # JSON file with optional "loyalty" and "scoring" sections
    policy_path: Optional[str] = None

    retry_attempts: int = 5
    retry_base_delay: float = 0.01
    batch_concurrency: int = 8

    scheduler_enabled: bool = False
    scheduler_hour: int = 3

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.store not in ("memory", "supabase"):
            raise ValueError(f"LOYALTY_STORE must be memory or supabase, got {self.store!r}")
        if self.retry_attempts < 1:
            raise ValueError("LOYALTY_RETRY_ATTEMPTS must be >= 1")
        if self.retry_base_delay < 0:
            raise ValueError("LOYALTY_RETRY_BASE_DELAY cannot be negative")
        if self.batch_concurrency < 1:
            raise ValueError("LOYALTY_BATCH_CONCURRENCY must be >= 1")
        if not 0 <= self.scheduler_hour <= 23:
            raise ValueError("LOYALTY_SCHEDULER_HOUR must be within 0..23")


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        store=os.getenv("LOYALTY_STORE", "memory").strip().lower(),
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY"),
        policy_path=os.getenv("LOYALTY_POLICY_PATH") or None,
        retry_attempts=_int("LOYALTY_RETRY_ATTEMPTS", 5),
        retry_base_delay=_float("LOYALTY_RETRY_BASE_DELAY", 0.01),
        batch_concurrency=_int("LOYALTY_BATCH_CONCURRENCY", 8),
        scheduler_enabled=is_enabled("LOYALTY_SCHEDULER_ENABLED", False),
        scheduler_hour=_int("LOYALTY_SCHEDULER_HOUR", 3),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
