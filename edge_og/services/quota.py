from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from edge_og.logging import get_logger
from edge_og.services.kv_store import KVStore

logger = get_logger("edge_og.quota")


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    usage: int
    limit: int
    key: str


def yyyymm(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y%m")


def usage_key(key_id: str, month: str) -> str:
    return f"usage:{key_id}:{month}"


def next_month_start(moment: datetime | None = None) -> datetime:
    moment = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return moment.replace(month=moment.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def seconds_until_reset(moment: datetime | None = None) -> int:
    moment = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return max(1, int((next_month_start(moment) - moment).total_seconds()))


def _count(raw: object) -> int:
    if raw is None:
        return 0
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return raw
    if isinstance(raw, dict):
        count = raw.get("count", 0)
        return count if isinstance(count, int) and not isinstance(count, bool) else 0
    return 0


class QuotaLedger:
    """Monthly per-key counters checked against plan limits.

    Read and write are separate store calls; concurrent requests for the same
    key can both pass the check and overcount past the limit.
    """

    def __init__(self, store: KVStore, plan_limits: Mapping[str, int]) -> None:
        self.store = store
        self.plan_limits = dict(plan_limits)

    def limit_for(self, plan: str | None) -> int:
        if plan and plan in self.plan_limits:
            return self.plan_limits[plan]
        return self.plan_limits.get("free", 0)

    async def usage(self, key_id: str, month: str | None = None) -> int:
        return _count(await self.store.get_json(usage_key(key_id, month or yyyymm())))

    async def check_and_increment(
        self, key_id: str, plan: str | None, *, now: datetime | None = None
    ) -> QuotaDecision:
        key = usage_key(key_id, yyyymm(now))
        limit = self.limit_for(plan)
        current = _count(await self.store.get_json(key))

        if current >= limit:
            logger.warning("quota_exceeded", kid=key_id, plan=plan or "free", current=current, limit=limit)
            return QuotaDecision(allowed=False, usage=current, limit=limit, key=key)

        updated = current + 1
        await self.store.put_json(key, {"count": updated})
        return QuotaDecision(allowed=True, usage=updated, limit=limit, key=key)

    async def reset(self, key_id: str, month: str | None = None) -> None:
        key = usage_key(key_id, month or yyyymm())
        await self.store.put_json(key, {"count": 0})
        logger.info("quota_reset", kid=key_id, month=key.rsplit(":", 1)[-1])
