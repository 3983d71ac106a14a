from __future__ import annotations

import hashlib
import hmac
import time
from enum import Enum
from typing import Any, Callable

import jwt

MAGIC_LINK_TTL_SECONDS = 15 * 60
SESSION_TTL_SECONDS = 24 * 60 * 60

ALGORITHM = "HS256"


class TokenKind(str, Enum):
    MAGIC_LINK = "magic_link"
    SESSION = "session"


def constant_time_equal(a: str | bytes, b: str | bytes) -> bool:
    """Compare two values without an early exit on the first differing byte.

    Length mismatches are rejected up front; equal-length buffers are compared
    with ``hmac.compare_digest``, which accumulates the XOR of every byte pair.
    """
    left = a.encode("utf-8") if isinstance(a, str) else a
    right = b.encode("utf-8") if isinstance(b, str) else b
    if len(left) != len(right):
        return False
    return hmac.compare_digest(left, right)


def hmac_sha256_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class TokenCodec:
    """Stateless HS256 JWTs shared by the magic-link and session flows.

    Expiry is checked against the injected clock with no leeway, so a token
    is dead from the second its ``exp`` is reached.
    """

    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        self._secret = secret
        self._clock = clock

    def issue(self, payload: dict[str, Any], ttl_seconds: int, kind: TokenKind) -> str:
        now = int(self._clock())
        claims = {**payload, "iat": now, "exp": now + ttl_seconds, "type": kind.value}
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str, kind: TokenKind | None = None) -> dict[str, Any] | None:
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "require": ["exp", "iat", "type"]},
            )
        except jwt.InvalidTokenError:
            return None

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock():
            return None
        if kind is not None and payload.get("type") != kind.value:
            return None
        return payload

    def issue_magic_link(self, account_id: str, email_hash: str) -> str:
        return self.issue(
            {"account_id": account_id, "email_hash": email_hash},
            MAGIC_LINK_TTL_SECONDS,
            TokenKind.MAGIC_LINK,
        )

    def issue_session(self, account_id: str, email_hash: str) -> str:
        return self.issue(
            {"account_id": account_id, "email_hash": email_hash},
            SESSION_TTL_SECONDS,
            TokenKind.SESSION,
        )
