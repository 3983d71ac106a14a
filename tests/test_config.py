from __future__ import annotations

import pytest
from pydantic import ValidationError

from edge_og.config import DEFAULT_PLAN_LIMITS, Settings


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("EDGE_OG_PLAN_LIMITS", "free=5, Pro=300000")
    monkeypatch.setenv("EDGE_OG_REQUIRE_AUTH", "false")
    monkeypatch.setenv("EDGE_OG_STORE_BACKEND", " SQLite ")
    monkeypatch.setenv("EDGE_OG_BASE_URL", "https://og.example.com/")
    monkeypatch.setenv("EDGE_OG_CACHE_VERSION", "")
    monkeypatch.setenv("EDGE_OG_OVERAGE_PRICE_EUR", "0.45")

    settings = Settings()

    assert settings.plan_limits == {"free": 5, "starter": 50_000, "pro": 300_000}
    assert settings.require_auth is False
    assert settings.store_backend == "sqlite"
    assert settings.base_url == "https://og.example.com"
    assert settings.cache_version is None
    assert settings.overage_price_eur == 0.45


def test_settings_defaults(monkeypatch) -> None:
    for name in ("EDGE_OG_PLAN_LIMITS", "EDGE_OG_ENVIRONMENT", "EDGE_OG_REQUIRE_AUTH"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.plan_limits == DEFAULT_PLAN_LIMITS
    assert settings.plan_limits is not DEFAULT_PLAN_LIMITS
    assert settings.require_auth is True
    assert settings.is_production is False


@pytest.mark.parametrize("raw", ["free", "free=-1", "free=lots"])
def test_invalid_plan_limits_fail_at_startup(monkeypatch, raw: str) -> None:
    monkeypatch.setenv("EDGE_OG_PLAN_LIMITS", raw)
    with pytest.raises(ValidationError):
        Settings()


def test_settings_are_immutable() -> None:
    settings = Settings(environment="production", jwt_secret="short", email_pepper="short")

    assert settings.is_production
    assert len(settings.auth_configuration_errors()) == 2
    with pytest.raises(ValidationError):
        settings.environment = "development"
