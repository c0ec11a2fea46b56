"""
stack_orchestrator.services.retry

Bounded retry for catalog/cluster transport errors.

Responsibilities:
- Retry `CatalogUnavailable` / retryable `ClusterUnavailable` with exponential backoff.
- Never retry structural errors (`RecipeNotFound`, `CycleDetected`, rejected manifests).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from stack_orchestrator.errors import CatalogUnavailable, ClusterUnavailable
from stack_orchestrator.observability.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, CatalogUnavailable):
        return True
    if isinstance(exc, ClusterUnavailable):
        return exc.retryable
    return False


async def retry_transient(
    op: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    what: str,
) -> T:
    """
    Run `op` up to `attempts` times; delays grow base, 2*base, 4*base...
    The last transient error propagates unchanged.
    """

    attempt = 1
    while True:
        try:
            return await op()
        except (CatalogUnavailable, ClusterUnavailable) as e:
            if not is_transient(e) or attempt >= attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            log.warning(
                "retry.transient_error",
                what=what,
                attempt=attempt,
                delay_s=delay,
                error=e.message,
            )
            attempt += 1
            await asyncio.sleep(delay)
