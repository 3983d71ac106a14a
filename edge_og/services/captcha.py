from __future__ import annotations

from typing import Any

import httpx

from edge_og.logging import get_logger

SITEVERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
MIN_TOKEN_LENGTH = 10

logger = get_logger("edge_og.captcha")


class TurnstileVerifier:
    """Server-side check of a Cloudflare Turnstile token.

    Outside production every request passes. In production a missing secret,
    a short token or any transport failure refuses the request.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        production: bool,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.production = production
        self.timeout = timeout
        self._transport = transport

    async def verify(self, token: str | None, remote_ip: str | None = None) -> bool:
        if not self.production:
            logger.info("turnstile_skipped", reason="not_production")
            return True
        if not self.secret_key:
            logger.error("turnstile_misconfigured")
            return False
        if not token or len(token) < MIN_TOKEN_LENGTH:
            logger.warning("turnstile_token_invalid")
            return False

        form = {"secret": self.secret_key, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(SITEVERIFY_URL, data=form)
            result: Any = response.json() if response.is_success else None
        except httpx.HTTPError as exc:
            logger.error("turnstile_request_failed", error=str(exc))
            return False
        except ValueError as exc:
            logger.error("turnstile_response_invalid", error=str(exc))
            return False

        if not isinstance(result, dict) or result.get("success") is not True:
            logger.warning(
                "turnstile_rejected",
                status_code=response.status_code,
                error_codes=result.get("error-codes") if isinstance(result, dict) else None,
            )
            return False
        return True
