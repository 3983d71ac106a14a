from __future__ import annotations

import asyncio

import pytest
from fastapi import BackgroundTasks

from edge_og.errors import InfrastructureError, NotFoundError, ValidationError
from edge_og.services.accounts import AccountStore, validate_email
from edge_og.services.api_keys import APIKeyStore
from edge_og.services.keygen import BASE62_ALPHABET
from edge_og.services.kv_store import MemoryKVStore, StoreError

SERVER_SECRET = "server-secret-with-at-least-32-characters"


class BrokenStore(MemoryKVStore):
    async def get(self, key: str) -> str | None:
        raise StoreError("backend down")

    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        raise StoreError("backend down")


class LaggingStore(MemoryKVStore):
    """Holds the next key-record read open so another coroutine can write meanwhile."""

    lag_next_record_read = False

    async def get(self, key: str) -> str | None:
        value = await super().get(key)
        if key.startswith("key:") and self.lag_next_record_read:
            self.lag_next_record_read = False
            await asyncio.sleep(0.05)
        return value


def _flip(value: str, index: int) -> str:
    current = value[index]
    replacement = "A" if current != "A" else "B"
    if current == "_":
        replacement = "-"
    return f"{value[:index]}{replacement}{value[index + 1:]}"


@pytest.mark.asyncio
async def test_created_key_validates_to_its_account() -> None:
    keys = APIKeyStore(MemoryKVStore(), SERVER_SECRET)
    created = await keys.create("acc-1", "  Production  ")

    assert created.name == "Production"
    assert created.prefix == f"eog_{created.key_id}"
    assert created.full_key.startswith(created.prefix + "_")

    principal = await keys.validate(created.full_key, BackgroundTasks())
    assert principal is not None
    assert principal.account_id == "acc-1"
    assert principal.key_id == created.key_id


@pytest.mark.asyncio
async def test_any_single_character_flip_fails_validation() -> None:
    keys = APIKeyStore(MemoryKVStore(), SERVER_SECRET)
    created = await keys.create("acc-1", "Flip")

    for index in range(len(created.full_key)):
        assert await keys.validate(_flip(created.full_key, index), BackgroundTasks()) is None


@pytest.mark.asyncio
async def test_validation_records_last_used_in_background() -> None:
    keys = APIKeyStore(MemoryKVStore(), SERVER_SECRET)
    created = await keys.create("acc-1", "Background")
    background = BackgroundTasks()

    await keys.validate(created.full_key, background)
    assert len(background.tasks) == 1
    await background()

    [item] = await keys.list("acc-1")
    assert item.last_used is not None


@pytest.mark.asyncio
async def test_revoke_then_list_and_validate() -> None:
    keys = APIKeyStore(MemoryKVStore(), SERVER_SECRET)
    created = await keys.create("acc-1", "Temporary")

    assert await keys.revoke(created.key_id, "acc-1") is True
    assert await keys.revoke(created.key_id, "acc-1") is True

    [item] = await keys.list("acc-1")
    assert item.id == created.key_id
    assert item.revoked is True
    assert await keys.list("acc-1", active_only=True) == []
    assert await keys.validate(created.full_key, BackgroundTasks()) is None


@pytest.mark.asyncio
async def test_last_used_update_cannot_undo_a_concurrent_revoke() -> None:
    store = LaggingStore()
    keys = APIKeyStore(store, SERVER_SECRET)
    created = await keys.create("acc-1", "Racing")

    store.lag_next_record_read = True
    await asyncio.gather(keys.touch_last_used(created.key_id), keys.revoke(created.key_id, "acc-1"))

    assert await keys.validate(created.full_key, BackgroundTasks()) is None
    [item] = await keys.list("acc-1")
    assert item.revoked is True
    assert item.last_used is not None
    record = await store.get_json(f"key:{created.key_id}")
    assert "last_used" not in record


@pytest.mark.asyncio
async def test_revoke_refuses_other_accounts_and_unknown_keys() -> None:
    keys = APIKeyStore(MemoryKVStore(), SERVER_SECRET)
    created = await keys.create("acc-1", "Mine")

    assert await keys.revoke(created.key_id, "acc-2") is False
    assert await keys.revoke("missing", "acc-1") is False
    assert await keys.validate(created.full_key, BackgroundTasks()) is not None


@pytest.mark.asyncio
async def test_list_is_scoped_to_account() -> None:
    keys = APIKeyStore(MemoryKVStore(), SERVER_SECRET)
    await keys.create("acc-1", "First")
    await keys.create("acc-1", "Second")
    await keys.create("acc-2", "Other")

    names = {item.name for item in await keys.list("acc-1")}
    assert names == {"First", "Second"}


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "   ", "x" * 101])
async def test_invalid_key_names_are_rejected(name: str) -> None:
    keys = APIKeyStore(MemoryKVStore(), SERVER_SECRET)
    with pytest.raises(ValidationError):
        await keys.create("acc-1", name)


@pytest.mark.asyncio
async def test_store_failure_fails_closed() -> None:
    healthy = MemoryKVStore()
    created = await APIKeyStore(healthy, SERVER_SECRET).create("acc-1", "Prod")

    broken = APIKeyStore(BrokenStore(), SERVER_SECRET)
    assert await broken.validate(created.full_key, BackgroundTasks()) is None
    with pytest.raises(InfrastructureError) as exc_info:
        await broken.create("acc-1", "Prod")
    assert exc_info.value.code == "API_KEY_CREATION_FAILED"


@pytest.mark.parametrize(
    "email,valid",
    [
        ("ada@example.com", True),
        ("  Ada@Example.COM ", True),
        ("no-at-sign", False),
        ("two@@example.com", False),
        ("spaces in@example.com", False),
        ("", False),
        (None, False),
    ],
)
def test_validate_email(email: str | None, valid: bool) -> None:
    assert validate_email(email) is valid


@pytest.mark.asyncio
async def test_account_get_or_create_is_keyed_by_email_hash() -> None:
    accounts = AccountStore(MemoryKVStore(), "pepper-0123456789")
    email_hash = accounts.hash_email(" Ada@Example.com ")
    assert email_hash == accounts.hash_email("ada@example.com")

    first, created = await accounts.get_or_create(email_hash)
    again, created_again = await accounts.get_or_create(email_hash)

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert first.plan == "free"


@pytest.mark.asyncio
async def test_account_plan_update() -> None:
    accounts = AccountStore(MemoryKVStore(), "pepper-0123456789")
    account = await accounts.create(accounts.hash_email("ada@example.com"))

    updated = await accounts.update_plan(account.id, "starter")
    assert updated.plan == "starter"
    assert (await accounts.get(account.id)).plan == "starter"

    with pytest.raises(ValueError):
        await accounts.update_plan(account.id, "enterprise")
    with pytest.raises(NotFoundError):
        await accounts.update_plan("missing", "pro")


def test_key_alphabet_has_no_separator() -> None:
    assert "_" not in BASE62_ALPHABET
