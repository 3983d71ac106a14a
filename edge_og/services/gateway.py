from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol

from fastapi import BackgroundTasks

from edge_og.config import Settings
from edge_og.errors import (
    AuthenticationError,
    InfrastructureError,
    NotFoundError,
    QuotaExceededError,
    RateLimitError,
)
from edge_og.logging import get_logger, set_account_context
from edge_og.services import cache
from edge_og.services.accounts import Account, AccountStore
from edge_og.services.api_keys import APIKeyStore, KeyPrincipal
from edge_og.services.background import schedule
from edge_og.services.captcha import TurnstileVerifier
from edge_og.services.keygen import parse_key
from edge_og.services.kv_store import KVStore, StoreError, build_store
from edge_og.services.overage import OverageLedger
from edge_og.services.quota import QuotaDecision, QuotaLedger, seconds_until_reset
from edge_og.services.rate_limiter import MAGIC_LINK_SCOPE, SlidingWindowRateLimiter
from edge_og.services.render_service import (
    BUILTIN_TEMPLATES,
    RasterizationError,
    RenderResult,
    RenderService,
    TemplateRenderError,
)
from edge_og.services.tokens import TokenCodec, TokenKind
from edge_og.services.user_templates import TemplateStore

TEMPLATE_DIR = Path(__file__).resolve().parents[1] / "templates"
ANONYMOUS_RENDER_SCOPE = "og-anonymous"

logger = get_logger("edge_og.gateway")


class Mailer(Protocol):
    async def send_magic_link(self, email: str, link: str) -> None: ...


class LogMailer:
    """Default mailer: delivery is external, so only record that a link was issued."""

    async def send_magic_link(self, email: str, link: str) -> None:
        logger.info(
            "magic_link_issued",
            email_domain=email.rsplit("@", 1)[-1],
            callback=link.split("?", 1)[0],
        )


@dataclass(frozen=True)
class Principal:
    account_id: str
    key_id: str
    plan: str


@dataclass(frozen=True)
class CacheIdentity:
    normalized: dict[str, str]
    version: str | None
    invalidated: bool
    etag: str


@dataclass
class RenderOutcome:
    result: RenderResult
    fallback: bool
    duration_ms: int


@dataclass
class Gateway:
    settings: Settings
    store: KVStore
    tokens: TokenCodec
    accounts: AccountStore
    api_keys: APIKeyStore
    quota: QuotaLedger
    overage: OverageLedger
    magic_link_limiter: SlidingWindowRateLimiter
    anonymous_limiter: SlidingWindowRateLimiter
    renderer: RenderService
    templates: TemplateStore
    captcha: TurnstileVerifier
    mailer: Mailer = field(default_factory=LogMailer)

    async def authenticate_api_key(
        self, authorization: str | None, background: BackgroundTasks | None = None
    ) -> Principal:
        candidate = ""
        if authorization and authorization.startswith("Bearer "):
            candidate = authorization[len("Bearer "):].strip()

        key = await self.api_keys.validate(candidate, background)
        if key is None:
            parsed = parse_key(candidate)
            logger.warning("auth_failed", kid=parsed[0] if parsed else None, status=401)
            raise AuthenticationError()

        set_account_context(key.account_id)
        return Principal(account_id=key.account_id, key_id=key.key_id, plan=await self._plan_for(key))

    async def _plan_for(self, key: KeyPrincipal) -> str:
        try:
            account = await self.accounts.get(key.account_id)
        except StoreError as exc:
            logger.warning("account_plan_lookup_failed", account_id=key.account_id, error=str(exc))
            return "free"
        return account.plan if account else "free"

    async def authenticate_session(self, token: str | None) -> Account:
        payload = self.tokens.verify(token or "", TokenKind.SESSION)
        if payload is None:
            raise AuthenticationError()
        try:
            account = await self.accounts.get(str(payload.get("account_id", "")))
        except StoreError as exc:
            logger.error("session_account_lookup_failed", error=str(exc))
            raise AuthenticationError() from exc
        if account is None:
            raise AuthenticationError()
        set_account_context(account.id)
        return account

    async def admit_anonymous(self, ip: str, scope: str = MAGIC_LINK_SCOPE) -> None:
        limiter = self.magic_link_limiter if scope == MAGIC_LINK_SCOPE else self.anonymous_limiter
        decision = await limiter.allow(ip)
        if not decision.allowed:
            raise RateLimitError(
                decision.retry_after,
                f"Too many requests. Please wait {decision.retry_after // 60} minutes before trying again.",
            )

    async def meter(self, principal: Principal, background: BackgroundTasks | None = None) -> QuotaDecision:
        try:
            decision = await self.quota.check_and_increment(principal.key_id, principal.plan)
        except StoreError as exc:
            logger.error("quota_check_failed", kid=principal.key_id, error=str(exc))
            raise InfrastructureError("QUOTA_UNAVAILABLE", "Usage metering is temporarily unavailable.") from exc

        if decision.allowed:
            return decision

        if principal.plan == "free":
            logger.warning(
                "quota_refused",
                kid=principal.key_id,
                plan=principal.plan,
                current=decision.usage,
                limit=decision.limit,
            )
            raise QuotaExceededError(
                plan=principal.plan,
                limit=decision.limit,
                usage=decision.usage,
                retry_after=seconds_until_reset(),
            )

        schedule(
            background,
            "overage_record",
            self.overage.record,
            principal.account_id,
            account_id=principal.account_id,
        )
        return decision

    async def resolve_template(self, template_id: str, principal: Principal | None) -> str:
        """Map a stored template to the built-in layout named by its slug.

        Only the owner may preview an unpublished template; anyone else gets 404.
        """
        template = await self.templates.get(template_id)
        owner = principal is not None and template is not None and principal.account_id == template.account
        if template is None or not (template.published or owner):
            logger.info("template_preview_missing", template_id=template_id)
            raise NotFoundError("Template not found")
        return template.slug if template.slug in BUILTIN_TEMPLATES else "default"

    async def render(self, params: dict[str, Any]) -> RenderOutcome:
        started = time.perf_counter()
        fallback = False
        try:
            result = await self.renderer.render(params)
        except RasterizationError as exc:
            logger.warning("png_rasterization_failed", error=str(exc))
            fallback = True
            try:
                result = await self.renderer.render({**params, "format": "svg"})
            except (RasterizationError, TemplateRenderError) as svg_exc:
                logger.error("svg_fallback_failed", error=str(svg_exc))
                raise InfrastructureError("RENDER_FAILED", "Image generation failed") from svg_exc
        except TemplateRenderError as exc:
            logger.error("template_render_failed", template=params.get("template"), error=str(exc))
            raise InfrastructureError("RENDER_FAILED", "Image generation failed") from exc
        duration_ms = round((time.perf_counter() - started) * 1000)
        return RenderOutcome(result=result, fallback=fallback, duration_ms=duration_ms)

    def cache_identity(
        self, query: Mapping[str, Any], observed_version: str | None
    ) -> CacheIdentity:
        normalized = cache.normalize(query)
        version = cache.resolve_version(query, self.settings.cache_version)
        observed = cache.validate_version(observed_version)
        # Only a copy the client or CDN actually holds can be invalidated.
        invalidated = observed is not None and cache.should_invalidate(version, observed)
        etag = cache.versioned_etag(normalized, version) if version else cache.etag(normalized)
        if invalidated:
            logger.info(
                "cache_invalidation",
                old_version=observed or "none",
                new_version=version or "none",
                invalidation_reason="version_mismatch",
            )
        return CacheIdentity(normalized=normalized, version=version, invalidated=invalidated, etag=etag)

    def magic_link_url(self, token: str) -> str:
        return f"{self.settings.base_url}/auth/callback?token={token}"

    async def close(self) -> None:
        await self.store.close()


def build_gateway(settings: Settings, store: KVStore | None = None) -> Gateway:
    store = store or build_store(
        settings.store_backend, db_path=settings.db_path, redis_url=settings.redis_url
    )
    return Gateway(
        settings=settings,
        store=store,
        tokens=TokenCodec(settings.jwt_secret),
        accounts=AccountStore(store, settings.email_pepper),
        api_keys=APIKeyStore(store, settings.jwt_secret),
        quota=QuotaLedger(store, settings.plan_limits),
        overage=OverageLedger(store, settings.overage_price_eur),
        magic_link_limiter=SlidingWindowRateLimiter(store, MAGIC_LINK_SCOPE),
        anonymous_limiter=SlidingWindowRateLimiter(
            store, ANONYMOUS_RENDER_SCOPE, max_requests=60, window_seconds=60
        ),
        renderer=RenderService(template_dir=TEMPLATE_DIR),
        templates=TemplateStore(store),
        captcha=TurnstileVerifier(settings.turnstile_secret_key, production=settings.is_production),
    )
