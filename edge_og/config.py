from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_PLAN_LIMITS: dict[str, int] = {
    "free": 1,
    "starter": 50_000,
    "pro": 200_000,
}

MIN_JWT_SECRET_LENGTH = 32
MIN_EMAIL_PEPPER_LENGTH = 16


def parse_plan_limits(raw: str | None) -> dict[str, int]:
    """Parse ``free=1,starter=50000,pro=200000`` into a plan -> limit mapping.

    Plans missing from ``raw`` keep their default limit.
    """
    limits = dict(DEFAULT_PLAN_LIMITS)
    if not raw:
        return limits
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        plan, sep, value = chunk.partition("=")
        if not sep:
            raise ValueError(f"Invalid plan limit entry '{chunk}'. Expected plan=limit.")
        limit = int(value.strip())
        if limit < 0:
            raise ValueError(f"Plan limit for '{plan.strip()}' must be >= 0.")
        limits[plan.strip().lower()] = limit
    return limits


class Settings(BaseSettings):
    """Gateway configuration, read from ``EDGE_OG_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="EDGE_OG_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    environment: str = "development"
    jwt_secret: str = ""
    email_pepper: str = ""
    admin_secret: str = ""
    stripe_webhook_secret: str = ""
    turnstile_secret_key: str = ""
    cache_version: str | None = None
    plan_limits: Annotated[dict[str, int], NoDecode] = Field(
        default_factory=lambda: dict(DEFAULT_PLAN_LIMITS)
    )
    overage_price_eur: float = Field(default=0.30, ge=0)
    require_auth: bool = True
    store_backend: str = "memory"
    db_path: str = "output/edge_og.sqlite3"
    redis_url: str = "redis://localhost:6379/0"
    base_url: str = "http://localhost:8000"
    log_level: str = "info"

    @field_validator("plan_limits", mode="before")
    @classmethod
    def parse_limits(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return parse_plan_limits(value)
        return value

    @field_validator("store_backend")
    @classmethod
    def normalize_backend(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("cache_version")
    @classmethod
    def blank_version_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    def auth_configuration_errors(self) -> list[str]:
        errors = []
        if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            errors.append(f"EDGE_OG_JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters")
        if len(self.email_pepper) < MIN_EMAIL_PEPPER_LENGTH:
            errors.append(
                f"EDGE_OG_EMAIL_PEPPER must be at least {MIN_EMAIL_PEPPER_LENGTH} characters"
            )
        return errors


def load_settings() -> Settings:
    return Settings()


@lru_cache
def get_settings() -> Settings:
    return load_settings()
