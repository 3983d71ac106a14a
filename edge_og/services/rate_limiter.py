from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from edge_og.logging import get_logger
from edge_og.services.kv_store import KVStore, StoreError

MAGIC_LINK_SCOPE = "magic-link"
DEFAULT_MAX_REQUESTS = 5
DEFAULT_WINDOW_SECONDS = 5 * 60

logger = get_logger("edge_og.rate_limiter")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int


class SlidingWindowRateLimiter:
    """Per-IP sliding window over request timestamps held in the store.

    Fails open: a store error lets the request through.
    """

    def __init__(
        self,
        store: KVStore,
        scope: str = MAGIC_LINK_SCOPE,
        *,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.scope = scope
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    def _key(self, ip: str) -> str:
        return f"ratelimit:{self.scope}:{ip}"

    async def allow(self, ip: str) -> RateLimitDecision:
        now_ms = int(self._clock() * 1000)
        window_start = now_ms - self.window_seconds * 1000
        key = self._key(ip)

        try:
            raw = await self.store.get_json(key)
            requests = []
            if isinstance(raw, dict) and isinstance(raw.get("requests"), list):
                requests = [ts for ts in raw["requests"] if isinstance(ts, int) and ts > window_start]

            if len(requests) >= self.max_requests:
                logger.warning(
                    "rate_limit_exceeded",
                    scope=self.scope,
                    client_ip=ip,
                    requests_count=len(requests),
                    window_seconds=self.window_seconds,
                )
                return RateLimitDecision(allowed=False, remaining=0, retry_after=self.window_seconds)

            requests.append(now_ms)
            await self.store.put_json(
                key,
                {"requests": requests, "count": len(requests)},
                ttl_seconds=self.window_seconds * 2,
            )
        except StoreError as exc:
            logger.error("rate_limit_check_failed", scope=self.scope, client_ip=ip, error=str(exc))
            return RateLimitDecision(
                allowed=True, remaining=self.max_requests, retry_after=self.window_seconds
            )

        return RateLimitDecision(
            allowed=True,
            remaining=self.max_requests - len(requests),
            retry_after=self.window_seconds,
        )
