"""
stack_orchestrator.db.repositories.stacks

Repositories for `Stack`, `ServiceNode` and `StackEdge` entities.

Responsibilities:
- Create stacks and their node/edge sets.
- Look up stacks per tenant (including the ACTIVE stack for a root recipe).
- Apply compare-and-set lifecycle transitions on service nodes.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from stack_orchestrator.db.models import (
    NodeStatus,
    ServiceNode,
    Stack,
    StackEdge,
    StackTarget,
    utcnow,
)
from stack_orchestrator.orchestrator.lifecycle import check_transition

_UNSET: Any = object()


class StackRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, tenant_id: str, root_recipe_id: str, created_by: str) -> Stack:
        stack = Stack(
            tenant_id=tenant_id,
            root_recipe_id=root_recipe_id,
            created_by=created_by,
            generation=1,
            target=StackTarget.active,
        )
        self._session.add(stack)
        await self._session.flush()
        return stack

    async def get(self, stack_id: uuid.UUID) -> Stack | None:
        stmt = (
            select(Stack)
            .where(Stack.id == stack_id)
            .options(selectinload(Stack.nodes), selectinload(Stack.edges))
            .execution_options(populate_existing=True)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def get_for_tenant(self, stack_id: uuid.UUID, tenant_id: str) -> Stack | None:
        # Another tenant's stack is reported as missing, never as forbidden.
        stack = await self.get(stack_id)
        if stack is None or stack.tenant_id != tenant_id:
            return None
        return stack

    async def active_for_root(self, *, tenant_id: str, root_recipe_id: str) -> Stack | None:
        stmt = (
            select(Stack)
            .where(
                Stack.tenant_id == tenant_id,
                Stack.root_recipe_id == root_recipe_id,
                Stack.target == StackTarget.active,
            )
            .options(selectinload(Stack.nodes), selectinload(Stack.edges))
            .order_by(Stack.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_for_tenant(
        self, tenant_id: str, *, include_deleted: bool = False, limit: int = 100
    ) -> list[Stack]:
        stmt = select(Stack).where(Stack.tenant_id == tenant_id)
        if not include_deleted:
            stmt = stmt.where(Stack.target == StackTarget.active)
        stmt = (
            stmt.options(selectinload(Stack.nodes), selectinload(Stack.edges))
            .order_by(Stack.created_at.desc())
            .limit(limit)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def bump_generation(
        self, stack_id: uuid.UUID, *, target: StackTarget | None = None
    ) -> int:
        """
        Increment the stack generation (and optionally flip its target).
        Returns the new generation; in-flight work tagged with an older one stops.
        """

        stack = await self._session.get(Stack, stack_id, populate_existing=True)
        if stack is None:
            raise LookupError(str(stack_id))
        stack.generation += 1
        if target is not None:
            stack.target = target
        await self._session.flush()
        return stack.generation

    async def current_generation(self, stack_id: uuid.UUID) -> int | None:
        stmt = select(Stack.generation).where(Stack.id == stack_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()


class NodeRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        *,
        stack_id: uuid.UUID,
        recipe_id: str,
        position: int,
        config: dict[str, Any],
        config_hash: str,
        generation: int,
    ) -> ServiceNode:
        node = ServiceNode(
            stack_id=stack_id,
            recipe_id=recipe_id,
            position=position,
            config=config,
            config_hash=config_hash,
            status=NodeStatus.pending,
            generation=generation,
            status_changed_at=utcnow(),
        )
        self._session.add(node)
        await self._session.flush()
        return node

    async def get(self, node_id: uuid.UUID) -> ServiceNode | None:
        return await self._session.get(ServiceNode, node_id, populate_existing=True)

    async def list_for_stack(self, stack_id: uuid.UUID) -> list[ServiceNode]:
        stmt = (
            select(ServiceNode)
            .where(ServiceNode.stack_id == stack_id)
            .order_by(ServiceNode.position)
            .execution_options(populate_existing=True)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def transition(
        self,
        *,
        node_id: uuid.UUID,
        expected_status: NodeStatus,
        expected_generation: int,
        status: NodeStatus,
        error: str | None = None,
        generation: int | None = None,
        config: dict[str, Any] | None = None,
        config_hash: str | None = None,
        position: int | None = None,
        observed_state: dict[str, Any] | None = None,
    ) -> bool:
        """
        Compare-and-set on (status, generation).

        Returns False when the row moved on since it was read; the caller's view is
        stale and the write is dropped.
        """

        check_transition(expected_status, status)
        values: dict[str, Any] = {
            "status": status,
            "error": error,
            "observe_failures": 0,
            "status_changed_at": utcnow(),
            "updated_at": utcnow(),
        }
        if generation is not None:
            values["generation"] = generation
        if config is not None:
            values["config"] = config
        if config_hash is not None:
            values["config_hash"] = config_hash
        if position is not None:
            values["position"] = position
        if observed_state is not None:
            values["observed_state"] = observed_state

        stmt = (
            update(ServiceNode)
            .where(
                ServiceNode.id == node_id,
                ServiceNode.status == expected_status,
                ServiceNode.generation == expected_generation,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def set_config(
        self,
        *,
        node_id: uuid.UUID,
        expected_status: NodeStatus,
        expected_generation: int,
        config: dict[str, Any],
        config_hash: str,
        generation: int,
    ) -> bool:
        """Replace the desired config of a node that is already rolling out."""

        stmt = (
            update(ServiceNode)
            .where(
                ServiceNode.id == node_id,
                ServiceNode.status == expected_status,
                ServiceNode.generation == expected_generation,
            )
            .values(
                config=config,
                config_hash=config_hash,
                generation=generation,
                error=None,
                status_changed_at=utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def record_observation(
        self,
        *,
        node_id: uuid.UUID,
        expected_status: NodeStatus,
        expected_generation: int,
        observed_state: dict[str, Any] | None = None,
        error: str | None | Any = _UNSET,
        observe_failures: int | None = None,
    ) -> bool:
        """
        Store observation bookkeeping without a status change (same CAS guard).
        """

        values: dict[str, Any] = {"updated_at": utcnow()}
        if observed_state is not None:
            values["observed_state"] = observed_state
        if error is not _UNSET:
            values["error"] = error
        if observe_failures is not None:
            values["observe_failures"] = observe_failures

        stmt = (
            update(ServiceNode)
            .where(
                ServiceNode.id == node_id,
                ServiceNode.status == expected_status,
                ServiceNode.generation == expected_generation,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class EdgeRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_for_stack(self, stack_id: uuid.UUID) -> list[StackEdge]:
        stmt = select(StackEdge).where(StackEdge.stack_id == stack_id)
        return list((await self._session.execute(stmt)).scalars().all())

    async def ensure(
        self, *, stack_id: uuid.UUID, from_node_id: uuid.UUID, to_node_id: uuid.UUID
    ) -> StackEdge:
        stmt = select(StackEdge).where(
            StackEdge.stack_id == stack_id,
            StackEdge.from_node_id == from_node_id,
            StackEdge.to_node_id == to_node_id,
        )
        existing = (await self._session.execute(stmt)).scalar_one_or_none()
        if existing is not None:
            return existing
        edge = StackEdge(stack_id=stack_id, from_node_id=from_node_id, to_node_id=to_node_id)
        self._session.add(edge)
        await self._session.flush()
        return edge


# --- Module Notes -----------------------------------------------------------
# Bulk UPDATEs bypass the identity map (synchronize_session=False); reads that follow
# a CAS write use populate_existing so they never return a stale cached row.
