from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from edge_og.errors import AuthorizationError, NotFoundError, ValidationError
from edge_og.logging import get_logger, redact
from edge_og.services.kv_store import KVStore

MAX_NAME_LENGTH = 100
MAX_SOURCE_LENGTH = 20_000
MAX_REVISIONS = 5

_SLUG_RE = re.compile(r"^[a-z0-9-]{1,100}$")
_TEMPLATE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")
_SCRIPT_RE = re.compile(r"<script", re.IGNORECASE)

logger = get_logger("edge_og.user_templates")


@dataclass(frozen=True)
class UserTemplate:
    id: str
    account: str
    name: str
    slug: str
    source: str
    version: int
    created_at: str
    updated_at: str
    published: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account": self.account,
            "name": self.name,
            "slug": self.slug,
            "source": self.source,
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "published": self.published,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "UserTemplate":
        return cls(
            id=str(record.get("id", "")),
            account=str(record.get("account", "")),
            name=str(record.get("name", "")),
            slug=str(record.get("slug", "")),
            source=str(record.get("source", "")),
            version=int(record.get("version") or 1),
            created_at=str(record.get("createdAt", "")),
            updated_at=str(record.get("updatedAt", "")),
            published=bool(record.get("published")),
        )


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def template_key(template_id: str) -> str:
    return f"template:{template_id}"


def revision_prefix(template_id: str) -> str:
    return f"template_rev:{template_id}:"


def revision_key(template_id: str, version: int) -> str:
    return f"{revision_prefix(template_id)}{version}"


def is_valid_template_id(template_id: str | None) -> bool:
    return bool(template_id) and bool(_TEMPLATE_ID_RE.match(template_id))


def validate_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Template name is required", {"field": "name"})
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Template name must be {MAX_NAME_LENGTH} characters or less", {"field": "name"}
        )
    return cleaned


def validate_slug(slug: str | None) -> str:
    cleaned = (slug or "").strip()
    if not _SLUG_RE.match(cleaned):
        raise ValidationError(
            "Slug must be 1-100 lowercase letters, digits or hyphens", {"field": "slug"}
        )
    return cleaned


def validate_source(source: str | None) -> str:
    if not source or not source.strip():
        raise ValidationError("Template source is required", {"field": "source"})
    if len(source) > MAX_SOURCE_LENGTH:
        raise ValidationError(
            f"Template source must be {MAX_SOURCE_LENGTH} characters or less", {"field": "source"}
        )
    if _SCRIPT_RE.search(source):
        raise ValidationError("Template source must not contain script tags", {"field": "source"})
    return source


class TemplateStore:
    """Account-owned template records with a bounded revision history."""

    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def get(self, template_id: str) -> UserTemplate | None:
        if not is_valid_template_id(template_id):
            return None
        record = await self.store.get_json(template_key(template_id))
        if not isinstance(record, dict):
            return None
        return UserTemplate.from_record(record)

    async def create(self, account_id: str, name: str, slug: str, source: str) -> UserTemplate:
        now = _utcnow_iso()
        template = UserTemplate(
            id=str(uuid.uuid4()),
            account=account_id,
            name=validate_name(name),
            slug=validate_slug(slug),
            source=validate_source(source),
            version=1,
            created_at=now,
            updated_at=now,
        )
        await self.store.put_json(template_key(template.id), template.to_record())
        logger.info("template_created", account_id=account_id, template_id=template.id, slug=template.slug)
        return template

    async def list(self, account_id: str) -> list[UserTemplate]:
        templates: list[UserTemplate] = []
        for key in await self.store.list_keys("template:"):
            record = await self.store.get_json(key)
            if isinstance(record, dict) and record.get("account") == account_id:
                templates.append(UserTemplate.from_record(record))
        templates.sort(key=lambda item: item.created_at, reverse=True)
        return templates

    async def update(
        self, template_id: str, account_id: str, *, source: str, name: str | None = None
    ) -> UserTemplate:
        if not is_valid_template_id(template_id):
            raise ValidationError("Invalid template id", {"field": "id"})
        new_source = validate_source(source)
        new_name = validate_name(name) if name is not None else None

        current = await self.get(template_id)
        if current is None:
            raise NotFoundError("Template not found")
        if current.account != account_id:
            logger.warning(
                "template_update_unauthorized",
                template_id=template_id,
                account_id=account_id,
                template_owner=redact(current.account),
            )
            raise AuthorizationError("You do not have access to this template")

        await self.store.put_json(revision_key(template_id, current.version), current.to_record())
        updated = replace(
            current,
            source=new_source,
            name=new_name or current.name,
            version=current.version + 1,
            updated_at=_utcnow_iso(),
        )
        await self.store.put_json(template_key(template_id), updated.to_record())
        await self._prune_revisions(template_id)
        logger.info("template_updated", template_id=template_id, account_id=account_id, version=updated.version)
        return updated

    async def revisions(self, template_id: str) -> list[int]:
        prefix = revision_prefix(template_id)
        versions = []
        for key in await self.store.list_keys(prefix):
            suffix = key[len(prefix):]
            if suffix.isdigit():
                versions.append(int(suffix))
        return sorted(versions)

    async def _prune_revisions(self, template_id: str) -> None:
        versions = await self.revisions(template_id)
        for version in versions[:-MAX_REVISIONS]:
            await self.store.delete(revision_key(template_id, version))
