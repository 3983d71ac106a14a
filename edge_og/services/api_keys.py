from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import BackgroundTasks

from edge_og.errors import InfrastructureError, ValidationError
from edge_og.logging import get_logger, redact
from edge_og.services.background import schedule
from edge_og.services.keygen import format_key, key_prefix, new_key_id, new_secret, parse_key
from edge_og.services.kv_store import KVStore, StoreError
from edge_og.services.tokens import constant_time_equal, hmac_sha256_hex

MAX_KEY_NAME_LENGTH = 100

logger = get_logger("edge_og.api_keys")


@dataclass(frozen=True)
class CreatedKey:
    key_id: str
    prefix: str
    full_key: str
    hash: str
    name: str
    created: str


@dataclass(frozen=True)
class KeyPrincipal:
    account_id: str
    key_id: str


@dataclass(frozen=True)
class APIKeyListItem:
    id: str
    name: str
    prefix: str
    created: str
    last_used: str | None
    revoked: bool


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def api_key_record_key(key_id: str) -> str:
    return f"key:{key_id}"


def last_used_key(key_id: str) -> str:
    return f"lastused:{key_id}"


def validate_key_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("API key name is required")
    if len(cleaned) > MAX_KEY_NAME_LENGTH:
        raise ValidationError(f"API key name must be {MAX_KEY_NAME_LENGTH} characters or less")
    return cleaned


class APIKeyStore:
    def __init__(self, store: KVStore, server_secret: str) -> None:
        self.store = store
        self._server_secret = server_secret

    def hash_key(self, full_key: str) -> str:
        return hmac_sha256_hex(self._server_secret, full_key)

    async def create(self, account_id: str, name: str) -> CreatedKey:
        cleaned_name = validate_key_name(name)
        key_id = new_key_id()
        full_key = format_key(key_id, new_secret())
        created = CreatedKey(
            key_id=key_id,
            prefix=key_prefix(key_id),
            full_key=full_key,
            hash=self.hash_key(full_key),
            name=cleaned_name,
            created=_utcnow_iso(),
        )
        record_key = api_key_record_key(key_id)
        try:
            await self.store.put_json(
                record_key,
                {
                    "account": account_id,
                    "hash": created.hash,
                    "name": cleaned_name,
                    "revoked": False,
                    "created": created.created,
                },
            )
        except StoreError as exc:
            logger.error(
                "api_key_creation_failed", account_id=account_id, key_id=key_id, error=str(exc)
            )
            try:
                await self.store.delete(record_key)
            except StoreError:
                logger.warning("api_key_creation_rollback_failed", key_id=key_id)
            raise InfrastructureError(
                "API_KEY_CREATION_FAILED", "Failed to generate API key. Please try again."
            ) from exc

        logger.info("api_key_created", account_id=account_id, key_id=key_id, key_name=cleaned_name)
        return created

    async def validate(
        self, candidate: str | None, background: BackgroundTasks | None = None
    ) -> KeyPrincipal | None:
        parsed = parse_key(candidate)
        if parsed is None:
            return None
        key_id, _ = parsed

        try:
            record = await self.store.get_json(api_key_record_key(key_id))
        except StoreError as exc:
            logger.error("api_key_verification_failed", key_id=key_id, error=str(exc))
            return None

        if not isinstance(record, dict) or record.get("revoked"):
            return None
        stored_hash = str(record.get("hash", ""))
        if not constant_time_equal(stored_hash, self.hash_key(candidate)):
            return None

        schedule(background, "api_key_last_used_update", self.touch_last_used, key_id, key_id=key_id)
        return KeyPrincipal(account_id=str(record["account"]), key_id=key_id)

    async def touch_last_used(self, key_id: str) -> None:
        # The key record itself is only written by create and revoke.
        await self.store.put(last_used_key(key_id), _utcnow_iso())

    async def list(self, account_id: str, *, active_only: bool = False) -> list[APIKeyListItem]:
        items: list[APIKeyListItem] = []
        for record_key in await self.store.list_keys("key:"):
            record = await self.store.get_json(record_key)
            if not isinstance(record, dict) or record.get("account") != account_id:
                continue
            revoked = bool(record.get("revoked"))
            if active_only and revoked:
                continue
            key_id = record_key.removeprefix("key:")
            last_used = await self.store.get(last_used_key(key_id)) or record.get("last_used")
            items.append(
                APIKeyListItem(
                    id=key_id,
                    name=str(record.get("name", "")),
                    prefix=key_prefix(key_id),
                    created=str(record.get("created", "")),
                    last_used=last_used,
                    revoked=revoked,
                )
            )
        items.sort(key=lambda item: item.created, reverse=True)
        logger.info("api_keys_listed", account_id=account_id, key_count=len(items))
        return items

    async def revoke(self, key_id: str, account_id: str) -> bool:
        record_key = api_key_record_key(key_id)
        record = await self.store.get_json(record_key)
        if not isinstance(record, dict):
            return False
        if record.get("account") != account_id:
            logger.warning(
                "api_key_revoke_unauthorized",
                key_id=key_id,
                account_id=account_id,
                key_owner=redact(str(record.get("account"))),
            )
            return False
        if record.get("revoked"):
            logger.info("api_key_already_revoked", key_id=key_id, account_id=account_id)
            return True

        record["revoked"] = True
        await self.store.put_json(record_key, record)
        logger.info("api_key_revoked", key_id=key_id, account_id=account_id, key_name=record.get("name"))
        return True
