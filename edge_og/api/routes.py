from __future__ import annotations

import json
from typing import Any, TypeVar

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from edge_og.api.admin_schemas import (
    ReportDailyRequest,
    ReportDailyResponse,
    ResetUsageRequest,
    ResetUsageResponse,
)
from edge_og.api.schemas import (
    APIKeyItem,
    APIKeyListResponse,
    CreatedKeyResponse,
    CreateKeyRequest,
    CreateTemplateRequest,
    DashboardUsageResponse,
    MagicLinkRequest,
    MagicLinkResponse,
    OGParams,
    RevokeKeyResponse,
    SessionResponse,
    TemplateListResponse,
    TemplateResponse,
    TemplateView,
    UpdateTemplateRequest,
    WebhookAck,
)
from edge_og.api.security import (
    SESSION_COOKIE,
    client_ip,
    get_gateway,
    require_admin_secret,
    require_api_key,
    require_auth_configured,
    require_session,
)
from edge_og.errors import (
    AuthenticationError,
    InfrastructureError,
    NotFoundError,
    UnsupportedMediaTypeError,
    ValidationError,
)
from edge_og.logging import get_logger, get_request_id
from edge_og.services import cache
from edge_og.services.accounts import Account, validate_email
from edge_og.services.billing import UPGRADE_EVENTS, UPGRADE_PLAN, extract_account_id, verify_stripe_signature
from edge_og.services.gateway import Gateway, Principal
from edge_og.services.quota import next_month_start, yyyymm
from edge_og.services.tokens import SESSION_TTL_SECONDS, TokenKind
from edge_og.services.user_templates import UserTemplate

ModelT = TypeVar("ModelT", bound=BaseModel)

router = APIRouter()
logger = get_logger("edge_og.routes")


def _validation_details(exc: PydanticValidationError) -> dict[str, Any]:
    return {
        "errors": [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors(include_url=False)
        ]
    }


def _is_json(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";", 1)[0].strip().lower() == "application/json"


async def _json_body(request: Request, model: type[ModelT], *, optional: bool = False) -> ModelT:
    raw = await request.body()
    if optional and not raw.strip():
        return model()
    if not _is_json(request):
        raise UnsupportedMediaTypeError()
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Invalid JSON body") from exc
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid request body", _validation_details(exc)) from exc


@router.get("/health", tags=["System"], summary="Health check")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/og",
    tags=["Images"],
    summary="Generate Open Graph image",
    description=(
        "Render a 1200x630 Open Graph image from query parameters. "
        "Responses are immutable and keyed by a content ETag."
    ),
    responses={
        200: {"content": {"image/png": {}, "image/svg+xml": {}}, "description": "Rendered image"},
        304: {"description": "Client copy is current"},
        400: {"description": "Invalid parameters"},
        401: {"description": "Missing or invalid API key"},
        404: {"description": "Stored template not found"},
        429: {"description": "Monthly quota exceeded or anonymous rate limit hit"},
        500: {"description": "Rendering or metering failed"},
    },
)
async def og_image(
    request: Request,
    background: BackgroundTasks,
    principal: Principal | None = Depends(require_api_key),
    gateway: Gateway = Depends(get_gateway),
) -> Response:
    query = dict(request.query_params)
    try:
        params = OGParams.model_validate(query)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid image parameters", _validation_details(exc)) from exc
    if params.template_id:
        template = await gateway.resolve_template(params.template_id, principal)
        params = params.model_copy(update={"template": template})

    identity = gateway.cache_identity(query, request.headers.get("X-Cache-Version"))
    if not identity.invalidated and cache.matches_if_none_match(
        request.headers.get("If-None-Match"), identity.etag
    ):
        headers = {"ETag": identity.etag, "Cache-Control": cache.CACHE_CONTROL, "X-Cache-Status": "HIT"}
        if identity.version:
            headers["X-Cache-Version"] = identity.version
        return Response(status_code=304, headers=headers)

    if principal is not None:
        await gateway.meter(principal, background)

    outcome = await gateway.render(params.render_params())
    headers = cache.cache_headers(
        content_type=outcome.result.content_type,
        etag_value=identity.etag,
        request_id=get_request_id(),
        render_ms=outcome.duration_ms,
        cache_status="MISS",
        version=identity.version,
        invalidated=identity.invalidated,
    )
    if outcome.fallback:
        headers["X-Fallback-To-SVG"] = "true"

    logger.info(
        "og_image_rendered",
        kid=principal.key_id if principal else None,
        template=params.template or "default",
        format=outcome.result.format,
        render_ms=outcome.duration_ms,
        fallback=outcome.fallback,
    )
    return Response(content=outcome.result.body, media_type=outcome.result.content_type, headers=headers)


@router.post(
    "/auth/request-link",
    tags=["Auth"],
    summary="Request a magic link",
    response_model=MagicLinkResponse,
    responses={
        400: {"description": "Invalid email or failed CAPTCHA"},
        415: {"description": "Body must be JSON"},
        429: {"description": "Too many requests from this IP"},
    },
)
async def request_magic_link(
    request: Request, gateway: Gateway = Depends(require_auth_configured)
) -> MagicLinkResponse:
    await gateway.admit_anonymous(client_ip(request))
    payload = await _json_body(request, MagicLinkRequest)
    if not await gateway.captcha.verify(payload.turnstile_token, client_ip(request)):
        raise ValidationError("CAPTCHA verification failed. Please try again.")
    if not validate_email(payload.email):
        raise ValidationError("Invalid email address")

    email = payload.email.strip().lower()
    email_hash = gateway.accounts.hash_email(email)
    account, created = await gateway.accounts.get_or_create(email_hash)
    token = gateway.tokens.issue_magic_link(account.id, email_hash)
    await gateway.mailer.send_magic_link(email, gateway.magic_link_url(token))

    logger.info("magic_link_requested", account_id=account.id, new_account=created)
    return MagicLinkResponse(message="Magic link sent. Check your email to sign in.")


@router.get(
    "/auth/callback",
    tags=["Auth"],
    summary="Exchange a magic link for a session",
    response_class=RedirectResponse,
    status_code=302,
    responses={401: {"description": "Invalid or expired link"}},
)
async def auth_callback(
    token: str = Query(default="", description="Magic-link token."),
    gateway: Gateway = Depends(require_auth_configured),
) -> RedirectResponse:
    payload = gateway.tokens.verify(token, TokenKind.MAGIC_LINK)
    if payload is None:
        logger.warning("magic_link_rejected")
        raise AuthenticationError()

    account = await gateway.accounts.get(str(payload.get("account_id", "")))
    if account is None:
        logger.warning("magic_link_account_missing")
        raise AuthenticationError()

    await gateway.accounts.touch_login(account.id)
    session = gateway.tokens.issue_session(account.id, account.email_hash)
    response = RedirectResponse(url="/dashboard", status_code=302)
    response.set_cookie(
        SESSION_COOKIE,
        session,
        max_age=SESSION_TTL_SECONDS,
        httponly=True,
        secure=True,
        samesite="lax",
        path="/",
    )
    logger.info("session_created", account_id=account.id)
    return response


@router.get("/auth/session", tags=["Auth"], summary="Current session", response_model=SessionResponse)
async def current_session(account: Account = Depends(require_session)) -> SessionResponse:
    return SessionResponse(
        account_id=account.id,
        plan=account.plan,
        created=account.created_at,
        last_login=account.last_login,
    )


@router.post(
    "/dashboard/api-keys",
    tags=["Dashboard"],
    summary="Create API key",
    description="Create an API key for the signed-in account. The full key is returned once.",
    status_code=201,
    response_model=CreatedKeyResponse,
    responses={400: {"description": "Invalid key name"}, 401: {"description": "Not signed in"}},
)
async def create_api_key(
    request: Request,
    account: Account = Depends(require_session),
    gateway: Gateway = Depends(get_gateway),
) -> CreatedKeyResponse:
    payload = await _json_body(request, CreateKeyRequest)
    created = await gateway.api_keys.create(account.id, payload.name)
    return CreatedKeyResponse(
        id=created.key_id,
        name=created.name,
        prefix=created.prefix,
        key=created.full_key,
        created=created.created,
    )


@router.get(
    "/dashboard/api-keys",
    tags=["Dashboard"],
    summary="List API keys",
    response_model=APIKeyListResponse,
)
async def list_api_keys(
    active: bool = Query(default=False, description="Only return keys that are not revoked."),
    account: Account = Depends(require_session),
    gateway: Gateway = Depends(get_gateway),
) -> APIKeyListResponse:
    items = await gateway.api_keys.list(account.id, active_only=active)
    return APIKeyListResponse(
        keys=[
            APIKeyItem(
                id=item.id,
                name=item.name,
                prefix=item.prefix,
                created=item.created,
                last_used=item.last_used,
                revoked=item.revoked,
            )
            for item in items
        ]
    )


@router.delete(
    "/dashboard/api-keys/{key_id}",
    tags=["Dashboard"],
    summary="Revoke API key",
    response_model=RevokeKeyResponse,
    responses={404: {"description": "API key not found"}},
)
async def revoke_api_key(
    key_id: str,
    account: Account = Depends(require_session),
    gateway: Gateway = Depends(get_gateway),
) -> RevokeKeyResponse:
    if not await gateway.api_keys.revoke(key_id, account.id):
        raise NotFoundError("API key not found")
    return RevokeKeyResponse(id=key_id, revoked=True)


@router.get(
    "/dashboard/usage",
    tags=["Dashboard"],
    summary="Usage this month",
    response_model=DashboardUsageResponse,
)
async def dashboard_usage(
    account: Account = Depends(require_session),
    gateway: Gateway = Depends(get_gateway),
) -> DashboardUsageResponse:
    month = yyyymm()
    keys = await gateway.api_keys.list(account.id)
    used = sum([await gateway.quota.usage(item.id, month) for item in keys])
    return DashboardUsageResponse(
        used=used,
        limit=gateway.quota.limit_for(account.plan),
        plan=account.plan,
        reset_at=next_month_start().isoformat(),
    )


def _template_view(template: UserTemplate) -> TemplateView:
    return TemplateView(
        id=template.id,
        name=template.name,
        slug=template.slug,
        version=template.version,
        created_at=template.created_at,
        updated_at=template.updated_at,
        published=template.published,
    )


@router.get(
    "/templates",
    tags=["Templates"],
    summary="List templates",
    description="Templates owned by the signed-in account, newest first. Sources are not returned.",
    response_model=TemplateListResponse,
)
async def list_templates(
    account: Account = Depends(require_session),
    gateway: Gateway = Depends(get_gateway),
) -> TemplateListResponse:
    templates = await gateway.templates.list(account.id)
    return TemplateListResponse(templates=[_template_view(item) for item in templates])


@router.post(
    "/templates",
    tags=["Templates"],
    summary="Create template",
    status_code=201,
    response_model=TemplateResponse,
    responses={
        400: {"description": "Invalid name, slug or source"},
        401: {"description": "Not signed in"},
        415: {"description": "Body must be JSON"},
    },
)
async def create_template(
    request: Request,
    account: Account = Depends(require_session),
    gateway: Gateway = Depends(get_gateway),
) -> TemplateResponse:
    payload = await _json_body(request, CreateTemplateRequest)
    template = await gateway.templates.create(account.id, payload.name, payload.slug, payload.source)
    return TemplateResponse(template=_template_view(template))


@router.put(
    "/templates/{template_id}",
    tags=["Templates"],
    summary="Update template",
    description="Replace the template source. The previous version is kept as a revision; five are retained.",
    response_model=TemplateResponse,
    responses={
        400: {"description": "Invalid template id or body"},
        401: {"description": "Not signed in"},
        403: {"description": "Template belongs to another account"},
        404: {"description": "Template not found"},
        415: {"description": "Body must be JSON"},
    },
)
async def update_template(
    template_id: str,
    request: Request,
    account: Account = Depends(require_session),
    gateway: Gateway = Depends(get_gateway),
) -> TemplateResponse:
    payload = await _json_body(request, UpdateTemplateRequest)
    template = await gateway.templates.update(
        template_id, account.id, source=payload.source, name=payload.name
    )
    return TemplateResponse(template=_template_view(template))


@router.post(
    "/webhooks/stripe",
    tags=["Billing"],
    summary="Stripe webhook",
    response_model=WebhookAck,
    responses={
        400: {"description": "Invalid payload"},
        401: {"description": "Invalid signature"},
        415: {"description": "Body must be JSON"},
    },
)
async def stripe_webhook(request: Request, gateway: Gateway = Depends(get_gateway)) -> WebhookAck:
    if not _is_json(request):
        raise UnsupportedMediaTypeError()
    raw = (await request.body()).decode("utf-8", errors="replace")

    secret = gateway.settings.stripe_webhook_secret
    if secret:
        check = verify_stripe_signature(request.headers.get("Stripe-Signature"), raw, secret)
        if not check.valid:
            logger.warning("webhook_signature_invalid", reason=check.reason)
            raise AuthenticationError()
    elif gateway.settings.is_production:
        logger.error("webhook_secret_missing")
        raise InfrastructureError("WEBHOOK_NOT_CONFIGURED", "Webhook verification is not configured.")
    else:
        logger.warning("webhook_signature_skipped", environment=gateway.settings.environment)

    try:
        event = json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Invalid JSON payload") from exc
    if not isinstance(event, dict):
        raise ValidationError("Invalid event payload")

    event_type = event.get("type")
    if event_type not in UPGRADE_EVENTS:
        logger.info("webhook_event_ignored", event_type=event_type)
        return WebhookAck()

    account_id = extract_account_id(event)
    if not account_id:
        logger.warning("webhook_account_missing", event_type=event_type)
        return WebhookAck()

    try:
        await gateway.accounts.update_plan(account_id, UPGRADE_PLAN)
    except NotFoundError:
        return WebhookAck()
    logger.info("webhook_plan_upgraded", event_type=event_type, account_id=account_id, plan=UPGRADE_PLAN)
    return WebhookAck()


@router.post(
    "/admin/usage/reset",
    tags=["Admin"],
    summary="Reset monthly usage",
    response_model=ResetUsageResponse,
    dependencies=[Depends(require_admin_secret)],
    responses={401: {"description": "Invalid admin secret"}},
)
async def reset_usage(request: Request, gateway: Gateway = Depends(get_gateway)) -> ResetUsageResponse:
    payload = await _json_body(request, ResetUsageRequest)
    month = payload.yyyymm or yyyymm()
    await gateway.quota.reset(payload.kid, month)
    logger.info("admin_usage_reset", kid=payload.kid, yyyymm=month)
    return ResetUsageResponse(
        kid=payload.kid, yyyymm=month, usage=await gateway.quota.usage(payload.kid, month)
    )


@router.post(
    "/admin/billing/report-daily",
    tags=["Admin"],
    summary="Daily overage report",
    description="Aggregate paid-plan overage for one UTC day (yesterday by default). Idempotent per day.",
    response_model=ReportDailyResponse,
    dependencies=[Depends(require_admin_secret)],
    responses={401: {"description": "Invalid admin secret"}},
)
async def report_daily(request: Request, gateway: Gateway = Depends(get_gateway)) -> ReportDailyResponse:
    payload = await _json_body(request, ReportDailyRequest, optional=True)
    report = await gateway.overage.report_daily(payload.target_date())
    return ReportDailyResponse(**report)
