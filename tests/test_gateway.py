from __future__ import annotations

import pytest
from fastapi import BackgroundTasks

from edge_og.config import Settings
from edge_og.errors import InfrastructureError, NotFoundError
from edge_og.services.gateway import Principal, build_gateway
from edge_og.services.kv_store import MemoryKVStore, StoreError
from edge_og.services.overage import yyyymmdd


class UsageOutageStore(MemoryKVStore):
    """Usage counters for one key are unreachable; everything else works."""

    async def get(self, key: str) -> str | None:
        if key.startswith("usage:bad:"):
            raise StoreError("usage shard down")
        return await super().get(key)


class SideEffectOutageStore(MemoryKVStore):
    """Writes made after the response (last-used stamps, overage) fail."""

    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        if key.startswith(("lastused:", "overage:")):
            raise StoreError("write rejected")
        await super().put(key, value, ttl_seconds=ttl_seconds)


def _settings() -> Settings:
    return Settings(_env_file=None, environment="test", jwt_secret="x" * 32, email_pepper="p" * 16)


@pytest.mark.asyncio
async def test_quota_outage_fails_closed_for_that_key_only() -> None:
    gateway = build_gateway(_settings(), store=UsageOutageStore())

    with pytest.raises(InfrastructureError) as exc_info:
        await gateway.meter(Principal(account_id="acc", key_id="bad", plan="free"), BackgroundTasks())
    assert exc_info.value.code == "QUOTA_UNAVAILABLE"
    assert exc_info.value.status_code == 500

    decision = await gateway.meter(Principal(account_id="acc", key_id="good", plan="free"), BackgroundTasks())
    assert decision.allowed is True
    assert decision.usage == 1


@pytest.mark.asyncio
async def test_failed_last_used_write_is_dropped() -> None:
    gateway = build_gateway(_settings(), store=SideEffectOutageStore())
    created = await gateway.api_keys.create("acc", "Prod")
    background = BackgroundTasks()

    principal = await gateway.authenticate_api_key(f"Bearer {created.full_key}", background)
    assert principal.key_id == created.key_id
    await background()

    [item] = await gateway.api_keys.list("acc")
    assert item.last_used is None
    assert item.revoked is False


@pytest.mark.asyncio
async def test_failed_overage_write_is_dropped() -> None:
    gateway = build_gateway(_settings(), store=SideEffectOutageStore())
    gateway.quota.plan_limits["starter"] = 0
    background = BackgroundTasks()

    decision = await gateway.meter(Principal(account_id="acc", key_id="kid", plan="starter"), background)
    assert decision.allowed is False
    assert len(background.tasks) == 1
    await background()

    assert await gateway.overage.daily_totals(yyyymmdd()) == {}


@pytest.mark.asyncio
async def test_stored_template_resolves_to_builtin_layout() -> None:
    gateway = build_gateway(_settings(), store=MemoryKVStore())
    owner = Principal(account_id="acc-1", key_id="kid", plan="free")
    stranger = Principal(account_id="acc-2", key_id="kid2", plan="free")

    blog = await gateway.templates.create("acc-1", "Blog", "blog", "<div/>")
    custom = await gateway.templates.create("acc-1", "Mine", "my-layout", "<div/>")

    assert await gateway.resolve_template(blog.id, owner) == "blog"
    assert await gateway.resolve_template(custom.id, owner) == "default"
    for template_id, principal in ((blog.id, stranger), (blog.id, None), ("tpl-missing-1", owner)):
        with pytest.raises(NotFoundError):
            await gateway.resolve_template(template_id, principal)
