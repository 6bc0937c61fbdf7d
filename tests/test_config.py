import pytest

from participant_portal.config import AppConfig
from participant_portal.core import engine as engine_module
from participant_portal.core.engine import PortalEngine
from participant_portal.core.rate_limiter import InMemoryRateLimiter

ENV_VARS = [
    "DATABASE_URL",
    "ENV",
    "REDIS_URL",
    "ADMIN_API_KEY",
    "PORTAL_SESSION_TTL_HOURS",
    "PORTAL_MAX_ATTEMPTS",
    "PORTAL_LOCK_MINUTES",
    "LOGIN_RATE_LIMIT_MAX_ATTEMPTS",
    "LOGIN_RATE_LIMIT_WINDOW_SECONDS",
    "CHECKIN_CODE_LENGTH",
    "EVENT_ACCESS_CODE_LENGTH",
    "CODE_MAX_ATTEMPTS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = AppConfig.load_from_env()

    assert config.env == "dev"
    assert config.session_ttl_seconds == 24 * 3600
    assert config.portal_max_attempts == 5
    assert config.login_rate_limit_max_attempts == 6
    assert config.login_rate_limit_window_seconds == 600
    assert config.redis_enabled is False


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv("PORTAL_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("PORTAL_SESSION_TTL_HOURS", "2")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db/portal")

    config = AppConfig.load_from_env()

    assert config.portal_max_attempts == 3
    assert config.session_ttl_seconds == 7200
    assert config.redis_enabled is True
    assert config.database_type() == "postgres"


def test_invalid_env_falls_back_to_dev(monkeypatch):
    monkeypatch.setenv("ENV", "staging")

    assert AppConfig.load_from_env().env == "dev"


def test_prod_requires_admin_key(monkeypatch):
    monkeypatch.setenv("ENV", "prod")

    with pytest.raises(RuntimeError):
        AppConfig.load_from_env()

    monkeypatch.setenv("ADMIN_API_KEY", "k")
    assert AppConfig.load_from_env().env == "prod"


def test_non_integer_values_are_rejected(monkeypatch):
    monkeypatch.setenv("PORTAL_LOCK_MINUTES", "ten")

    with pytest.raises(RuntimeError, match="PORTAL_LOCK_MINUTES"):
        AppConfig.load_from_env()


def test_out_of_range_values_are_rejected(monkeypatch):
    monkeypatch.setenv("PORTAL_MAX_ATTEMPTS", "0")

    with pytest.raises(RuntimeError):
        AppConfig.load_from_env()


def test_engine_falls_back_to_memory_when_redis_fails(monkeypatch, session_factory):
    def unavailable(**kwargs):
        raise ConnectionError("redis down")

    monkeypatch.setattr(engine_module, "RedisRateLimiter", unavailable)
    config = AppConfig(redis_url="redis://localhost:6379/0")

    engine = PortalEngine(config, db_session_factory=session_factory)

    assert isinstance(engine.rate_limiter, InMemoryRateLimiter)
    assert engine.rate_limiter.max_attempts == 6


def test_engine_applies_lockout_settings_to_new_organizations(session_factory):
    config = AppConfig(portal_max_attempts=2, portal_lock_minutes=1)
    engine = PortalEngine(config, db_session_factory=session_factory)

    organization = engine.registry.create_organization("Efes Travel", "efes")

    assert organization.portal_max_attempts == 2
    assert organization.portal_lock_minutes == 1
