from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def wait_with_stop(stop_event: asyncio.Event | None, timeout_seconds: float) -> bool:
    """Sleep for ``timeout_seconds`` unless ``stop_event`` fires first.

    Returns True when the stop event was set.
    """
    if stop_event is None:
        if timeout_seconds > 0:
            await asyncio.sleep(timeout_seconds)
        return False
    if timeout_seconds <= 0:
        return stop_event.is_set()

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    **fields: Any,
) -> T | None:
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            **fields,
        )
        return default
