from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from edge_og.services.tokens import constant_time_equal, hmac_sha256_hex

SIGNATURE_TOLERANCE_SECONDS = 300
UPGRADE_EVENTS = frozenset(
    {"invoice.paid", "checkout.session.completed", "customer.subscription.created"}
)
UPGRADE_PLAN = "starter"


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    reason: str | None = None


def sign_payload(secret: str, timestamp: int, raw_body: str) -> str:
    return hmac_sha256_hex(secret, f"{timestamp}.{raw_body}")


def verify_stripe_signature(
    header: str | None,
    raw_body: str,
    secret: str,
    *,
    now: float | None = None,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
) -> SignatureCheck:
    """Check a ``t={ts},v1={hex}`` header against HMAC-SHA256("{ts}.{body}")."""
    fields: dict[str, str] = {}
    for part in (header or "").split(","):
        name, sep, value = part.strip().partition("=")
        if sep and name not in fields:
            fields[name] = value
    if "t" not in fields or "v1" not in fields:
        return SignatureCheck(False, "missing_fields")
    try:
        timestamp = int(fields["t"])
    except ValueError:
        return SignatureCheck(False, "invalid_header")
    if not fields["v1"]:
        return SignatureCheck(False, "invalid_header")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        return SignatureCheck(False, "timestamp_out_of_tolerance")

    expected = sign_payload(secret, timestamp, raw_body)
    if not constant_time_equal(fields["v1"], expected):
        return SignatureCheck(False, "mismatch")
    return SignatureCheck(True)


def _dig(value: Any, *path: str | int) -> Any:
    for step in path:
        if isinstance(step, int):
            if not isinstance(value, list) or len(value) <= step:
                return None
        elif not isinstance(value, dict):
            return None
        value = value[step] if isinstance(step, int) else value.get(step)
    return value


def extract_account_id(event: dict[str, Any]) -> str | None:
    candidates = (
        _dig(event, "data", "object", "metadata", "account_id"),
        _dig(event, "data", "object", "subscription_details", "metadata", "account_id"),
        _dig(event, "data", "object", "lines", "data", 0, "metadata", "account_id"),
        _dig(event, "data", "object", "customer_details", "metadata", "account_id"),
        _dig(event, "account_id"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None
