from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, get_args

from edge_og.errors import NotFoundError
from edge_og.logging import get_logger, redact
from edge_og.services.kv_store import KVStore, StoreError

Plan = Literal["free", "starter", "pro"]
PLANS: tuple[str, ...] = get_args(Plan)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

logger = get_logger("edge_og.accounts")


@dataclass(frozen=True)
class Account:
    id: str
    email_hash: str
    plan: str
    created_at: str
    last_login: str | None = None

    def to_record(self) -> dict[str, str]:
        record = {"email_hash": self.email_hash, "plan": self.plan, "created": self.created_at}
        if self.last_login:
            record["last_login"] = self.last_login
        return record

    @classmethod
    def from_record(cls, account_id: str, record: dict) -> "Account":
        return cls(
            id=account_id,
            email_hash=str(record.get("email_hash", "")),
            plan=str(record.get("plan") or "free"),
            created_at=str(record.get("created", "")),
            last_login=record.get("last_login"),
        )


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def validate_email(email: str | None) -> bool:
    if not email or not isinstance(email, str):
        return False
    normalized = email.strip().lower()
    return bool(_EMAIL_RE.match(normalized)) and 5 <= len(normalized) <= 254


class AccountStore:
    def __init__(self, store: KVStore, pepper: str) -> None:
        self.store = store
        self._pepper = pepper

    def hash_email(self, email: str) -> str:
        normalized = email.strip().lower()
        return hashlib.sha256(f"{normalized}{self._pepper}".encode("utf-8")).hexdigest()

    async def get(self, account_id: str) -> Account | None:
        record = await self.store.get_json(account_key(account_id))
        if not isinstance(record, dict):
            return None
        return Account.from_record(account_id, record)

    async def create(self, email_hash: str) -> Account:
        account = Account(
            id=str(uuid.uuid4()), email_hash=email_hash, plan="free", created_at=_utcnow_iso()
        )
        await self.store.put_json(account_key(account.id), account.to_record())
        logger.info("account_created", account_id=account.id)
        return account

    async def find_by_email_hash(self, email_hash: str) -> Account | None:
        # Linear scan of account:*; the store offers no secondary index.
        for key in await self.store.list_keys("account:"):
            record = await self.store.get_json(key)
            if isinstance(record, dict) and record.get("email_hash") == email_hash:
                return Account.from_record(key.removeprefix("account:"), record)
        return None

    async def get_or_create(self, email_hash: str) -> tuple[Account, bool]:
        existing = await self.find_by_email_hash(email_hash)
        if existing is not None:
            return existing, False
        return await self.create(email_hash), True

    async def touch_login(self, account_id: str) -> None:
        try:
            record = await self.store.get_json(account_key(account_id))
            if isinstance(record, dict):
                record["last_login"] = _utcnow_iso()
                await self.store.put_json(account_key(account_id), record)
        except StoreError as exc:
            logger.warning("account_last_login_update_failed", account_id=account_id, error=str(exc))

    async def update_plan(self, account_id: str, plan: str) -> Account:
        if plan not in PLANS:
            raise ValueError(f"Unsupported plan '{plan}'.")
        record = await self.store.get_json(account_key(account_id))
        if not isinstance(record, dict):
            logger.warning("account_plan_update_missing", account_id=account_id)
            raise NotFoundError("Account not found")
        previous = record.get("plan", "free")
        record["plan"] = plan
        await self.store.put_json(account_key(account_id), record)
        logger.info(
            "account_plan_updated",
            account_id=account_id,
            previous_plan=previous,
            plan=plan,
            email_hash=redact(record.get("email_hash")),
        )
        return Account.from_record(account_id, record)
