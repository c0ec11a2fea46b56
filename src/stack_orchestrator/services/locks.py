"""
stack_orchestrator.services.locks

Per-stack mutation locks.

Responsibilities:
- Guarantee at most one structural mutation (rollout, teardown, update) in flight per
  stack id, while different stacks proceed independently.
- Offer a non-waiting acquire (deploy/update surface `DeployConflict`) and a waiting
  acquire (removal queues behind the superseded rollout).
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque


class StackMutationLocks:
    """
    Ownership is handed directly to the oldest waiter on release, so a non-waiting
    caller can never slip in between a release and a queued removal.
    """

    def __init__(self) -> None:
        self._held: set[uuid.UUID] = set()
        self._waiters: dict[uuid.UUID, deque[asyncio.Future[None]]] = {}

    def is_busy(self, stack_id: uuid.UUID) -> bool:
        return stack_id in self._held

    def try_acquire(self, stack_id: uuid.UUID) -> bool:
        if stack_id in self._held:
            return False
        self._held.add(stack_id)
        return True

    async def acquire(self, stack_id: uuid.UUID) -> None:
        if self.try_acquire(stack_id):
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(stack_id, deque()).append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Ownership arrived together with the cancellation; pass it on.
                self.release(stack_id)
            raise

    def release(self, stack_id: uuid.UUID) -> None:
        waiters = self._waiters.get(stack_id)
        while waiters:
            fut = waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._waiters.pop(stack_id, None)
        self._held.discard(stack_id)


# --- Module Notes -----------------------------------------------------------
# Locks are process-local. Running several API replicas against one database needs a
# shared lease (e.g. a row lock) instead.
