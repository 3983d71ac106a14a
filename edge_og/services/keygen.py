from __future__ import annotations

import math
import secrets

BASE62_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
KEY_PREFIX = "eog"
KEY_ID_BYTES = 8
SECRET_BYTES = 32
# ceil(256 / log2(62)): every 32-byte secret encodes to at most this many chars.
SECRET_MIN_LENGTH = math.ceil(SECRET_BYTES * 8 / math.log2(62))


def encode_base62(raw: bytes) -> str:
    value = int.from_bytes(raw, "big")
    if value == 0:
        return BASE62_ALPHABET[0]
    digits = []
    while value:
        value, remainder = divmod(value, 62)
        digits.append(BASE62_ALPHABET[remainder])
    return "".join(reversed(digits))


def new_key_id() -> str:
    return encode_base62(secrets.token_bytes(KEY_ID_BYTES))


def new_secret() -> str:
    # Left-pad so the length never reveals the magnitude of the random value.
    return encode_base62(secrets.token_bytes(SECRET_BYTES)).rjust(
        SECRET_MIN_LENGTH, BASE62_ALPHABET[0]
    )


def key_prefix(key_id: str) -> str:
    return f"{KEY_PREFIX}_{key_id}"


def format_key(key_id: str, secret: str) -> str:
    return f"{key_prefix(key_id)}_{secret}"


def parse_key(candidate: str | None) -> tuple[str, str] | None:
    """Split ``eog_{keyId}_{secret}`` or return None for anything else."""
    if not candidate:
        return None
    parts = candidate.split("_")
    if len(parts) != 3:
        return None
    prefix, key_id, secret = parts
    if prefix != KEY_PREFIX or not key_id or not secret:
        return None
    return key_id, secret
