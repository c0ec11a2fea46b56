"""
stack_orchestrator.services.stack_service

Orchestrator facade shared by the HTTP API and the agent tool router.

Responsibilities:
- Wire catalog, reconciler, deployer, stats and per-stack locks around one cluster
  backend and one sessionmaker.
- Serve the tenant-scoped read side: stack graph views, NDJSON watch streams,
  service logs, connection info and the audit trail.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Iterable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stack_orchestrator.auth.models import RequestContext
from stack_orchestrator.catalog.resolver import CatalogResolver
from stack_orchestrator.cluster.client import ClusterApi
from stack_orchestrator.cluster.naming import ownership_labels, tenant_namespace
from stack_orchestrator.cluster.stats import ClusterStatsAggregator
from stack_orchestrator.db.models import NodeStatus
from stack_orchestrator.db.repositories.audit import AuditRepo
from stack_orchestrator.db.repositories.stacks import NodeRepo, StackRepo
from stack_orchestrator.db.session import session_scope
from stack_orchestrator.errors import ServiceNotFound, StackNotFound
from stack_orchestrator.orchestrator.snapshot import NodeSnapshot, StackSnapshot, snapshot_stack
from stack_orchestrator.services.deployer import StackDeployer
from stack_orchestrator.services.locks import StackMutationLocks
from stack_orchestrator.services.reconciler import StatusReconciler
from stack_orchestrator.services.transitions import as_uuid
from stack_orchestrator.settings import Settings


class StackOrchestrator:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        cluster: ClusterApi,
        settings: Settings,
    ) -> None:
        self.settings = settings
        self.cluster = cluster
        self._session_factory = session_factory

        self.locks = StackMutationLocks()
        self.catalog = CatalogResolver(session_factory=session_factory)
        self.reconciler = StatusReconciler(
            session_factory=session_factory, cluster=cluster, settings=settings
        )
        self.deployer = StackDeployer(
            session_factory=session_factory,
            catalog=self.catalog,
            cluster=cluster,
            reconciler=self.reconciler,
            locks=self.locks,
            settings=settings,
        )
        self.stats = ClusterStatsAggregator(cluster=cluster)

    # --- stack views -------------------------------------------------------

    async def get_stack(self, ctx: RequestContext, stack_id: str | uuid.UUID) -> StackSnapshot:
        """Reconciled snapshot of one of the caller's stacks."""

        return await self.reconciler.refresh(self.parse_stack_id(stack_id), tenant_id=ctx.tenant_id)

    async def list_stacks(self, ctx: RequestContext) -> list[StackSnapshot]:
        """Every ACTIVE stack of the tenant, reconciled while transitional."""

        async with session_scope(self._session_factory) as session:
            rows = await StackRepo(session).list_for_tenant(ctx.tenant_id)
            snaps = [snapshot_stack(s, s.nodes, s.edges) for s in rows]

        out: list[StackSnapshot] = []
        for snap in reversed(snaps):
            if snap.transitional:
                snap = await self.reconciler.refresh(snap.id)
            out.append(snap)
        return out

    def graph_view(self, snapshots: Iterable[StackSnapshot]) -> dict[str, Any]:
        """
        Graph shape for the UI; `poll_interval_seconds` is None once everything is stable.
        """

        snaps = list(snapshots)
        transitional = any(s.transitional for s in snaps)
        return {
            "stacks": [
                {
                    "id": str(s.id),
                    "root_recipe_id": s.root_recipe_id,
                    "status": s.status,
                    "target": s.target.value,
                }
                for s in snaps
            ],
            "nodes": [n.as_graph_node() | {"stack_id": str(s.id)} for s in snaps for n in s.nodes],
            "edges": [e.as_graph_edge() for s in snaps for e in s.edges],
            "transitional": transitional,
            "poll_interval_seconds": (
                self.settings.stack_poll_interval_seconds if transitional else None
            ),
        }

    async def watch_stack(
        self, ctx: RequestContext, stack_id: str | uuid.UUID
    ) -> AsyncIterator[StackSnapshot]:
        sid = self.parse_stack_id(stack_id)
        # Ownership is checked before the first yield so the API can still answer 404.
        await self.reconciler.snapshot(sid, tenant_id=ctx.tenant_id)
        return self.reconciler.watch_stack(sid, tenant_id=ctx.tenant_id)

    # --- services ----------------------------------------------------------

    async def find_service(
        self, ctx: RequestContext, node_id: str | uuid.UUID
    ) -> tuple[StackSnapshot, NodeSnapshot]:
        try:
            nid = as_uuid(node_id)
        except ValueError:
            raise ServiceNotFound(str(node_id)) from None

        async with session_scope(self._session_factory) as session:
            row = await NodeRepo(session).get(nid)
            stack_id = None if row is None else row.stack_id
        if stack_id is None:
            raise ServiceNotFound(str(node_id))
        try:
            snap = await self.reconciler.snapshot(stack_id, tenant_id=ctx.tenant_id)
        except StackNotFound:
            raise ServiceNotFound(str(node_id)) from None
        node = snap.node(nid)
        if node is None:
            raise ServiceNotFound(str(node_id))
        return snap, node

    async def get_logs(
        self, ctx: RequestContext, node_id: str | uuid.UUID, *, tail_lines: int = 100
    ) -> tuple[NodeSnapshot, str]:
        snap, node = await self.find_service(ctx, node_id)
        labels = ownership_labels(
            tenant_id=snap.tenant_id, stack_id=snap.id, node_id=node.id, recipe_id=node.recipe_id
        )
        text = await self.cluster.read_logs(
            namespace=tenant_namespace(self.settings.namespace_prefix, snap.tenant_id),
            labels=labels,
            tail_lines=tail_lines,
        )
        return node, text

    async def connection_info(self, ctx: RequestContext, node_id: str | uuid.UUID) -> dict[str, Any]:
        """
        In-cluster address of a service. Credentials are included only for roles that
        may change the stack.
        """

        snap, node = await self.find_service(ctx, node_id)
        if node.status == NodeStatus.deleted:
            raise ServiceNotFound(str(node_id))
        info = await self.deployer.connection_info(snap, node)
        out: dict[str, Any] = {
            "node_id": str(node.id),
            "stack_id": str(snap.id),
            "recipe_id": node.recipe_id,
            "status": node.status.value,
            "name": info["name"],
            "host": info["host"],
            "port": info["port"],
        }
        if ctx.can_mutate:
            out["secrets"] = info["secrets"]
        return out

    async def audit_trail(
        self, ctx: RequestContext, stack_id: str | uuid.UUID, *, limit: int = 500
    ) -> list[dict[str, Any]]:
        sid = self.parse_stack_id(stack_id)
        await self.reconciler.snapshot(sid, tenant_id=ctx.tenant_id)
        async with session_scope(self._session_factory) as session:
            events = await AuditRepo(session).list_for_stack(sid, limit=limit)
            return [
                {
                    "id": ev.id,
                    "node_id": None if ev.node_id is None else str(ev.node_id),
                    "actor": ev.actor,
                    "event_type": ev.event_type,
                    "details": ev.details,
                    "created_at": ev.created_at.isoformat(),
                }
                for ev in events
            ]

    async def aclose(self) -> None:
        await self.deployer.shutdown()
        await self.cluster.aclose()

    @staticmethod
    def parse_stack_id(value: str | uuid.UUID) -> uuid.UUID:
        try:
            return as_uuid(value)
        except ValueError:
            raise StackNotFound(str(value)) from None


# --- Module Notes -----------------------------------------------------------
# Reads never take the per-stack mutation lock; reconciliation only writes status
# fields and is safe alongside an in-flight rollout.
