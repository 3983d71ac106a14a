from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from fastapi import BackgroundTasks

from edge_og.logging import get_logger

logger = get_logger("edge_og.background")

_detached: set[asyncio.Task[None]] = set()


async def run_best_effort(
    event: str, func: Callable[..., Awaitable[Any]], *args: Any, **fields: Any
) -> None:
    try:
        await func(*args)
    except Exception as exc:  # noqa: BLE001 - side effects never reach the caller
        logger.warning(f"{event}_failed", error=str(exc), **fields)


def schedule(
    background: BackgroundTasks | None,
    event: str,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    **fields: Any,
) -> None:
    """Run ``func(*args)`` after the response; failures are logged and dropped."""
    if background is not None:
        background.add_task(run_best_effort, event, func, *args, **fields)
        return
    task = asyncio.get_running_loop().create_task(run_best_effort(event, func, *args, **fields))
    _detached.add(task)
    task.add_done_callback(_detached.discard)
