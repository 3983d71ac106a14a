from __future__ import annotations

import hashlib
import json
import re
from email.utils import formatdate
from typing import Any, Mapping

CACHE_CONTROL = "public, immutable, max-age=31536000"
CACHE_TTL_SECONDS = 31536000
VERSION_PARAMS = ("v", "cache_version")
PARAM_DEFAULTS: dict[str, str] = {
    "template": "default",
    "theme": "light",
    "font": "inter",
    "format": "png",
}

_VERSION_RE = re.compile(r"^[A-Za-z0-9._-]{1,32}$")


def normalize(params: Mapping[str, Any]) -> dict[str, str]:
    """Canonical form of render parameters used for cache identity.

    Values are trimmed and lower-cased, boolean-like strings collapse to
    ``"true"``/``"false"``, empty values fall back to defaults and the keys
    come back sorted. Cache-version parameters are not part of the identity.
    """
    normalized: dict[str, str] = {}
    for key, value in params.items():
        if key in VERSION_PARAMS or value is None:
            continue
        if isinstance(value, bool):
            normalized[key] = "true" if value else "false"
            continue
        normalized[key] = str(value).strip().lower()

    for key, default in PARAM_DEFAULTS.items():
        if not normalized.get(key):
            normalized[key] = default

    return dict(sorted(normalized.items()))


def _canonical_json(data: Mapping[str, Any]) -> str:
    return json.dumps(dict(data), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _short_hash(content: str) -> str:
    return f'"{hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]}"'


def etag(normalized: Mapping[str, Any]) -> str:
    return _short_hash(_canonical_json(normalized))


def versioned_etag(normalized: Mapping[str, Any], version: str) -> str:
    return _short_hash(_canonical_json({**normalized, "_version": version}))


def validate_version(version: str | None) -> str | None:
    if version is None:
        return None
    version = version.strip()
    return version if _VERSION_RE.match(version) else None


def resolve_version(request_params: Mapping[str, Any], env_default: str | None) -> str | None:
    for name in VERSION_PARAMS:
        value = request_params.get(name)
        version = validate_version(str(value)) if value else None
        if version:
            return version
    return validate_version(env_default)


def should_invalidate(new_version: str | None, observed_version: str | None) -> bool:
    return (new_version or None) != (observed_version or None)


def matches_if_none_match(header: str | None, current_etag: str) -> bool:
    if not header:
        return False
    candidates = [item.strip() for item in header.split(",")]
    return "*" in candidates or current_etag in candidates or f"W/{current_etag}" in candidates


def cache_headers(
    *,
    content_type: str,
    etag_value: str,
    request_id: str | None,
    render_ms: int,
    cache_status: str,
    version: str | None = None,
    invalidated: bool = False,
) -> dict[str, str]:
    headers = {
        "Content-Type": content_type,
        "Cache-Control": CACHE_CONTROL,
        "ETag": etag_value,
        "Last-Modified": formatdate(usegmt=True),
        "Vary": "Accept-Encoding",
        "X-Render-Time": f"{render_ms}ms",
        "X-Cache-Status": cache_status,
        "X-Cache-TTL": str(CACHE_TTL_SECONDS),
    }
    if request_id:
        headers["X-Request-ID"] = request_id
    if version:
        headers["X-Cache-Version"] = version
    if invalidated:
        headers["X-Cache-Invalidated"] = "true"
    return headers
