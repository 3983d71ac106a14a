from __future__ import annotations

import math
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any

from edge_og.logging import get_logger
from edge_og.services.kv_store import KVStore

UNIT_SIZE = 100_000

logger = get_logger("edge_og.overage")


def yyyymmdd(day: date | datetime | None = None) -> str:
    if day is None:
        day = datetime.now(timezone.utc)
    if isinstance(day, datetime):
        day = day.astimezone(timezone.utc).date()
    return day.strftime("%Y%m%d")


def yesterday_utc() -> date:
    return datetime.now(timezone.utc).date() - timedelta(days=1)


def overage_key(account_id: str, day: str) -> str:
    return f"overage:{account_id}:{day}"


def reported_key(day: str) -> str:
    return f"overage:reported:{day}"


class OverageLedger:
    def __init__(self, store: KVStore, price_per_unit_eur: float = 0.30) -> None:
        self.store = store
        self.price_per_unit_eur = price_per_unit_eur

    async def record(self, account_id: str, delta: int = 1, *, day: date | None = None) -> int:
        stamp = yyyymmdd(day)
        key = overage_key(account_id, stamp)
        raw = await self.store.get_json(key)
        current = raw.get("count", 0) if isinstance(raw, dict) else 0
        updated = int(current) + delta
        await self.store.put_json(
            key, {"count": updated, "yyyymmdd": stamp, "updated_at": int(time.time() * 1000)}
        )
        logger.info("overage_recorded", account_id=account_id, date=stamp, count=updated)
        return updated

    async def daily_totals(self, day: str) -> dict[str, int]:
        totals: dict[str, int] = {}
        for key in await self.store.list_keys("overage:"):
            parts = key.split(":")
            if len(parts) != 3 or parts[1] == "reported" or parts[2] != day:
                continue
            raw = await self.store.get_json(key)
            totals[parts[1]] = int(raw.get("count", 0)) if isinstance(raw, dict) else 0
        return totals

    async def is_reported(self, day: str) -> bool:
        return await self.store.get(reported_key(day)) == "true"

    async def report_daily(self, target_date: date | None = None) -> dict[str, Any]:
        day = yyyymmdd(target_date or yesterday_utc())
        if await self.is_reported(day):
            logger.info("overage_report_skipped", date=day, already_reported=True)
            return {"date": day, "already_reported": True}

        items = []
        for account_id, count in sorted((await self.daily_totals(day)).items()):
            units = math.ceil(count / UNIT_SIZE)
            items.append(
                {
                    "account_id": account_id,
                    "overage": count,
                    "units_100k": units,
                    "amount_eur": round(units * self.price_per_unit_eur, 2),
                }
            )

        await self.store.put(reported_key(day), "true")
        logger.info("overage_report_generated", date=day, accounts=len(items))
        return {"date": day, "already_reported": False, "items": items}
