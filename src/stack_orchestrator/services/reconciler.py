"""
stack_orchestrator.services.reconciler

Status Reconciler.

Responsibilities:
- `reconcile(stack_id)`: observe every live node in the cluster and advance its
  stored status (ready -> RUNNING, failed -> FAILED, absent after delete -> DELETED).
- Isolate per-node observation errors behind a retry budget.
- Fail nodes stuck in DEPLOYING/DELETING past the timeout with a `NodeTimeout` message.
- `watch_stack(stack_id)`: snapshot stream that polls while transitional and ends
  once the stack is stable.

All writes are compare-and-set on (status, generation); the reconciler never issues
cluster mutations.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stack_orchestrator.cluster.client import ClusterApi, Observation, ObservedPhase
from stack_orchestrator.cluster.naming import ownership_labels, tenant_namespace
from stack_orchestrator.db.models import NodeStatus, utcnow
from stack_orchestrator.db.repositories.audit import AuditRepo
from stack_orchestrator.db.repositories.stacks import EdgeRepo, NodeRepo, StackRepo
from stack_orchestrator.db.session import session_scope
from stack_orchestrator.errors import ClusterUnavailable, NodeTimeout, StackNotFound
from stack_orchestrator.observability.logging import get_logger
from stack_orchestrator.orchestrator.lifecycle import OBSERVED
from stack_orchestrator.orchestrator.snapshot import NodeSnapshot, StackSnapshot, snapshot_stack
from stack_orchestrator.services.transitions import transition_node
from stack_orchestrator.settings import Settings

log = get_logger(__name__)

_TIMED = frozenset({NodeStatus.deploying, NodeStatus.deleting})


@dataclass(frozen=True, slots=True)
class _Result:
    node: NodeSnapshot
    observation: Observation | None = None
    error: str | None = None


def next_status(current: NodeStatus, phase: ObservedPhase) -> NodeStatus | None:
    """
    Map one observation onto the lifecycle. None means "no transition".
    """

    match current:
        case NodeStatus.deploying:
            if phase == ObservedPhase.ready:
                return NodeStatus.running
            if phase == ObservedPhase.failed:
                return NodeStatus.failed
        case NodeStatus.running:
            if phase == ObservedPhase.failed:
                return NodeStatus.failed
            if phase == ObservedPhase.deploying:
                return NodeStatus.deploying
            if phase == ObservedPhase.absent:
                # Drift: something outside the orchestrator removed the resources.
                return NodeStatus.failed
        case NodeStatus.deleting:
            if phase == ObservedPhase.absent:
                return NodeStatus.deleted
        case _:
            return None
    return None


class StatusReconciler:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        cluster: ClusterApi,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._cluster = cluster
        self._settings = settings

    async def snapshot(self, stack_id: uuid.UUID, *, tenant_id: str | None = None) -> StackSnapshot:
        """Stored view only; no cluster calls."""

        async with session_scope(self._session_factory) as session:
            stacks = StackRepo(session)
            stack = (
                await stacks.get(stack_id)
                if tenant_id is None
                else await stacks.get_for_tenant(stack_id, tenant_id)
            )
            if stack is None:
                raise StackNotFound(str(stack_id))
            nodes = await NodeRepo(session).list_for_stack(stack_id)
            edges = await EdgeRepo(session).list_for_stack(stack_id)
            return snapshot_stack(stack, nodes, edges)

    async def reconcile(self, stack_id: uuid.UUID) -> list[NodeSnapshot]:
        before = await self.snapshot(stack_id)
        namespace = tenant_namespace(self._settings.namespace_prefix, before.tenant_id)

        observed = [n for n in before.nodes if n.status in OBSERVED]
        results = await asyncio.gather(
            *(self._observe(before.tenant_id, namespace, n) for n in observed)
        )

        now = utcnow()
        async with session_scope(self._session_factory) as session:
            nodes = NodeRepo(session)
            audit = AuditRepo(session)
            for res in results:
                await self._apply_result(nodes, audit, before, res)
            # Timeouts are judged on the stored status, so a DELETING node whose
            # observation just failed still times out.
            for node in before.nodes:
                if node.status not in _TIMED:
                    continue
                elapsed = (now - node.status_changed_at).total_seconds()
                if elapsed <= self._settings.node_timeout_seconds:
                    continue
                message = NodeTimeout(
                    str(node.id), node.status.value, self._settings.node_timeout_seconds
                ).message
                await self._transition(
                    nodes, audit, before, node, NodeStatus.failed, error=message, reason="timeout"
                )

        return list((await self.snapshot(stack_id)).nodes)

    async def refresh(self, stack_id: uuid.UUID, *, tenant_id: str | None = None) -> StackSnapshot:
        """Reconcile, then return the updated stack snapshot."""

        if tenant_id is not None:
            # Tenant check before any cluster traffic.
            await self.snapshot(stack_id, tenant_id=tenant_id)
        await self.reconcile(stack_id)
        return await self.snapshot(stack_id)

    async def watch_stack(
        self, stack_id: uuid.UUID, *, tenant_id: str | None = None
    ) -> AsyncIterator[StackSnapshot]:
        while True:
            snap = await self.refresh(stack_id, tenant_id=tenant_id)
            yield snap
            if not snap.transitional:
                return
            await asyncio.sleep(self._settings.stack_poll_interval_seconds)

    async def _observe(self, tenant_id: str, namespace: str, node: NodeSnapshot) -> _Result:
        labels = ownership_labels(
            tenant_id=tenant_id, stack_id=node.stack_id, node_id=node.id, recipe_id=node.recipe_id
        )
        try:
            observation = await self._cluster.observe(namespace=namespace, labels=labels)
        except ClusterUnavailable as e:
            return _Result(node=node, error=e.message)
        return _Result(node=node, observation=observation)

    async def _apply_result(
        self, nodes: NodeRepo, audit: AuditRepo, stack: StackSnapshot, res: _Result
    ) -> None:
        node = res.node
        if res.observation is None:
            failures = node.observe_failures + 1
            budget = self._settings.observe_retry_budget
            if failures >= budget:
                await self._transition(
                    nodes,
                    audit,
                    stack,
                    node,
                    NodeStatus.failed,
                    error=f"Cluster status unavailable after {failures} attempts: {res.error}",
                    reason="observe_budget_exhausted",
                )
                return
            log.warning(
                "reconcile.observe_failed",
                stack_id=str(stack.id),
                node_id=str(node.id),
                attempt=failures,
                error=res.error,
            )
            await nodes.record_observation(
                node_id=node.id,
                expected_status=node.status,
                expected_generation=node.generation,
                error=f"Status check failed ({failures}/{budget}), retrying: {res.error}",
                observe_failures=failures,
            )
            return

        obs = res.observation
        target = next_status(node.status, obs.phase)
        if target is None:
            cleared = node.observe_failures > 0
            await nodes.record_observation(
                node_id=node.id,
                expected_status=node.status,
                expected_generation=node.generation,
                observed_state={"phase": obs.phase.value, **obs.raw},
                error=None if cleared else node.error,
                observe_failures=0,
            )
            return

        error = None
        if target == NodeStatus.failed:
            error = obs.detail or (
                "Resources disappeared from the cluster"
                if obs.phase == ObservedPhase.absent
                else "Cluster reported the service as failed"
            )
        await self._transition(
            nodes,
            audit,
            stack,
            node,
            target,
            error=error,
            reason=f"observed_{obs.phase.value}",
            observed_state={"phase": obs.phase.value, **obs.raw},
        )

    async def _transition(
        self,
        nodes: NodeRepo,
        audit: AuditRepo,
        stack: StackSnapshot,
        node: NodeSnapshot,
        target: NodeStatus,
        *,
        error: str | None,
        reason: str,
        observed_state: dict[str, Any] | None = None,
    ) -> bool:
        return await transition_node(
            nodes,
            audit,
            tenant_id=stack.tenant_id,
            node=node,
            target=target,
            actor="reconciler",
            reason=reason,
            error=error,
            observed_state=observed_state,
        )


# --- Module Notes -----------------------------------------------------------
# A timeout and an observation can both target the same node in one pass; the CAS on
# (status, generation) lets exactly one of them land.
