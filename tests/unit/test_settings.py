"""
Unit tests for environment-driven settings.
"""
import pytest

from apps.backend.services import settings as settings_module
from apps.backend.services.settings import Settings, load_settings


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch):
    monkeypatch.setattr(settings_module, "load_dotenv", lambda: None)
    for name in (
        "LOYALTY_STORE",
        "LOYALTY_RETRY_ATTEMPTS",
        "LOYALTY_RETRY_BASE_DELAY",
        "LOYALTY_SCHEDULER_ENABLED",
        "LOYALTY_SCHEDULER_HOUR",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = load_settings()
    assert s.store == "memory"
    assert s.retry_attempts == 5
    assert s.scheduler_enabled is False
    assert s.log_level == "INFO"


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("LOYALTY_STORE", "Supabase")
    monkeypatch.setenv("LOYALTY_RETRY_ATTEMPTS", "7")
    monkeypatch.setenv("LOYALTY_RETRY_BASE_DELAY", "0.5")
    monkeypatch.setenv("LOYALTY_SCHEDULER_ENABLED", "true")
    monkeypatch.setenv("LOYALTY_SCHEDULER_HOUR", "4")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    s = load_settings()

    assert s.store == "supabase"
    assert s.retry_attempts == 7
    assert s.retry_base_delay == 0.5
    assert s.scheduler_enabled is True
    assert s.scheduler_hour == 4
    assert s.log_level == "DEBUG"


def test_rejects_malformed_values(monkeypatch):
    monkeypatch.setenv("LOYALTY_RETRY_ATTEMPTS", "many")
    with pytest.raises(ValueError):
        load_settings()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"store": "redis"},
        {"retry_attempts": 0},
        {"retry_base_delay": -1},
        {"batch_concurrency": 0},
        {"scheduler_hour": 24},
    ],
)
def test_validation(kwargs):
    with pytest.raises(ValueError):
        Settings(**kwargs)
