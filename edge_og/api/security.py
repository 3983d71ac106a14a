from __future__ import annotations

from fastapi import BackgroundTasks, Depends, Request, Security
from fastapi.security import APIKeyCookie, APIKeyHeader

from edge_og.errors import AuthenticationError, InfrastructureError
from edge_og.logging import get_logger
from edge_og.services.accounts import Account
from edge_og.services.gateway import ANONYMOUS_RENDER_SCOPE, Gateway, Principal
from edge_og.services.keygen import KEY_PREFIX
from edge_og.services.tokens import constant_time_equal

SESSION_COOKIE = "edge_og_session"

authorization_header = APIKeyHeader(
    name="Authorization", scheme_name="BearerAPIKey", auto_error=False
)
session_cookie = APIKeyCookie(name=SESSION_COOKIE, scheme_name="SessionCookie", auto_error=False)
admin_secret_header = APIKeyHeader(
    name="X-Admin-Secret", scheme_name="AdminSecretAuth", auto_error=False
)

logger = get_logger("edge_og.security")


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("CF-Connecting-IP")
    if forwarded:
        return forwarded.strip()
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",", 1)[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def require_auth_configured(gateway: Gateway = Depends(get_gateway)) -> Gateway:
    errors = gateway.settings.auth_configuration_errors()
    if errors:
        logger.error("auth_not_configured", errors=errors)
        raise InfrastructureError("AUTH_NOT_CONFIGURED", "Authentication is not configured.")
    return gateway


async def require_api_key(
    request: Request,
    background: BackgroundTasks,
    authorization: str | None = Security(authorization_header),
    gateway: Gateway = Depends(get_gateway),
) -> Principal | None:
    """Resolve the caller of a metered endpoint.

    Returns ``None`` for anonymous callers, which are only admitted when
    authentication is switched off and are throttled per IP instead.
    """
    if not gateway.settings.require_auth and not authorization:
        await gateway.admit_anonymous(client_ip(request), ANONYMOUS_RENDER_SCOPE)
        return None
    require_auth_configured(gateway)
    return await gateway.authenticate_api_key(authorization, background)


async def require_session(
    authorization: str | None = Security(authorization_header),
    cookie: str | None = Security(session_cookie),
    gateway: Gateway = Depends(require_auth_configured),
) -> Account:
    token = cookie
    if not token and authorization and authorization.startswith("Bearer "):
        bearer = authorization[len("Bearer "):].strip()
        if not bearer.startswith(f"{KEY_PREFIX}_"):
            token = bearer
    return await gateway.authenticate_session(token)


def require_admin_secret(
    admin_secret: str | None = Security(admin_secret_header),
    gateway: Gateway = Depends(get_gateway),
) -> str:
    expected = gateway.settings.admin_secret
    if not expected or not admin_secret or not constant_time_equal(admin_secret, expected):
        logger.warning("admin_auth_failed", configured=bool(expected))
        raise AuthenticationError()
    return admin_secret
