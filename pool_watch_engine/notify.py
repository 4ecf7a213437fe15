from __future__ import annotations

import inspect
from typing import Awaitable, Callable, Union

from loguru import logger

from pool_watch_engine.models import PoolEvent

NewPoolHook = Callable[[PoolEvent], Union[Awaitable[None], None]]


def log_new_pool(event: PoolEvent) -> None:
    base, quote = event.base, event.quote
    logger.info(
        "New pool detected: {} base={} ({} dec, {}) quote={} ({} dec, {}) creator={}",
        event.signature,
        base.address,
        base.decimals,
        base.lp_amount,
        quote.address,
        quote.decimals,
        quote.lp_amount,
        event.creator,
    )


async def call_hook(hook: NewPoolHook, event: PoolEvent) -> None:
    """Run a sync or async hook; its failures are logged, never raised."""
    try:
        result = hook(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.exception("New-pool hook failed for {}: {}", event.signature, e)
