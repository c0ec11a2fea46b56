"""
stack_orchestrator.services.deployer

Deployer (rollout owner).

Responsibilities:
- `deploy_stack`: expand the root recipe into its dependency graph, create or reuse
  the tenant's ACTIVE stack, record nodes in PENDING and hand cluster work to a
  background rollout.
- `remove_stack`: supersede any in-flight rollout and tear down in reverse order.
- `update_service`: push a config change through RUNNING -> DEPLOYING.
- `restart_service`: re-apply a node with its current config so its pods roll.
- `connection_info`: the in-cluster address and credentials dependents are wired with.
- Implement `RolloutOps` for the LangGraph rollout (dependency gate, apply, teardown,
  settle).

The deployer never records RUNNING or DELETED; observed outcomes belong to the
reconciler. It only records FAILED for its own rejected cluster calls and for
dependents blocked by a failed dependency.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import uuid
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stack_orchestrator.auth.models import RequestContext
from stack_orchestrator.catalog.models import Recipe
from stack_orchestrator.catalog.resolver import CatalogResolver
from stack_orchestrator.catalog.template import (
    annotate_pod_templates,
    derive_secrets,
    render_manifest,
)
from stack_orchestrator.cluster.client import ClusterApi
from stack_orchestrator.cluster.naming import (
    ANNOTATION_RESTARTED,
    ownership_labels,
    resource_name,
    service_host,
    tenant_namespace,
)
from stack_orchestrator.db.models import NodeStatus, StackTarget
from stack_orchestrator.db.repositories.audit import AuditRepo
from stack_orchestrator.db.repositories.stacks import EdgeRepo, NodeRepo, StackRepo
from stack_orchestrator.db.session import session_scope
from stack_orchestrator.errors import (
    DeployConflict,
    Forbidden,
    OrchestratorError,
    ServiceNotFound,
    StackNotFound,
)
from stack_orchestrator.observability.logging import get_logger
from stack_orchestrator.orchestrator.dependency_graph import (
    DependencyGraph,
    build_dependency_graph,
)
from stack_orchestrator.orchestrator.graph import build_rollout_graph, recursion_limit_for
from stack_orchestrator.orchestrator.nodes import DependencyOutcome, StepOutcome
from stack_orchestrator.orchestrator.snapshot import NodeSnapshot, StackSnapshot
from stack_orchestrator.orchestrator.state import RolloutState
from stack_orchestrator.services.locks import StackMutationLocks
from stack_orchestrator.services.reconciler import StatusReconciler
from stack_orchestrator.services.retry import retry_transient
from stack_orchestrator.services.transitions import as_uuid, transition_node
from stack_orchestrator.settings import Settings

log = get_logger(__name__)

T = TypeVar("T")

_SETTLING = frozenset({NodeStatus.deploying, NodeStatus.deleting})
_BLOCKING = frozenset({NodeStatus.failed, NodeStatus.deleting, NodeStatus.deleted})
_GONE = frozenset({NodeStatus.deleting, NodeStatus.deleted})
_TEARDOWN_ATTEMPTS = 3


def config_hash(config: dict[str, Any]) -> str:
    raw = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


def _require_mutation(ctx: RequestContext) -> None:
    if not ctx.can_mutate:
        raise Forbidden(f"Role '{ctx.role}' cannot change stacks")


def _parse_id(value: str | uuid.UUID, missing: OrchestratorError) -> uuid.UUID:
    try:
        return as_uuid(value)
    except ValueError:
        raise missing from None


@dataclass(slots=True)
class _Plan:
    stack_id: uuid.UUID
    tenant_id: str
    generation: int
    queue: list[str] = field(default_factory=list)
    configs: dict[str, dict[str, Any]] = field(default_factory=dict)
    # Node ids re-applied even though their config is unchanged.
    restarts: list[str] = field(default_factory=list)
    # False for a no-op plan, which never takes the stack lock.
    locked: bool = True

    def state(self) -> RolloutState:
        return {
            "stack_id": str(self.stack_id),
            "generation": self.generation,
            "mode": "apply",
            "queue": list(self.queue),
            "configs": dict(self.configs),
            "restarts": list(self.restarts),
            "blocked": [],
            "failed": [],
            "steps": [],
        }


class StackDeployer:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: CatalogResolver,
        cluster: ClusterApi,
        reconciler: StatusReconciler,
        locks: StackMutationLocks,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._cluster = cluster
        self._reconciler = reconciler
        self._locks = locks
        self._settings = settings

        self._tasks: dict[uuid.UUID, set[asyncio.Task[None]]] = {}
        # Serializes "find or create the ACTIVE stack" per (tenant, root recipe).
        self._planning: dict[tuple[str, str], asyncio.Lock] = {}

    # --- public operations -------------------------------------------------

    async def deploy_stack(
        self,
        ctx: RequestContext,
        root_recipe_id: str,
        config: dict[str, Any] | None = None,
    ) -> StackSnapshot:
        """
        Returns once every node exists (new ones in PENDING); cluster work continues
        in a background rollout.
        """

        _require_mutation(ctx)
        graph = await self._retry(
            lambda: build_dependency_graph(self._catalog, root_recipe_id),
            what="catalog.resolve",
        )
        desired = self._desired_configs(graph, config or {})

        lock = self._planning.setdefault((ctx.tenant_id, graph.root), asyncio.Lock())
        async with lock:
            plan = await self._plan_deploy(ctx, graph, desired)

        if plan.queue:
            self._spawn(plan.stack_id, self._rollout(plan.state()))
        else:
            if plan.locked:
                self._locks.release(plan.stack_id)
            log.info("deploy.noop", stack_id=str(plan.stack_id), root_recipe_id=graph.root)
        return await self._reconciler.snapshot(plan.stack_id)

    async def remove_stack(self, ctx: RequestContext, stack_id: str | uuid.UUID) -> StackSnapshot:
        _require_mutation(ctx)
        sid = _parse_id(stack_id, StackNotFound(str(stack_id)))

        spawn = False
        generation = 0
        async with session_scope(self._session_factory) as session:
            stacks = StackRepo(session)
            stack = await stacks.get_for_tenant(sid, ctx.tenant_id)
            if stack is None:
                raise StackNotFound(str(stack_id))
            leftovers = [n for n in stack.nodes if NodeStatus(n.status) != NodeStatus.deleted]
            if stack.target != StackTarget.deleted or leftovers:
                # The bump makes any in-flight rollout stop at its next step.
                generation = await stacks.bump_generation(sid, target=StackTarget.deleted)
                await AuditRepo(session).add(
                    tenant_id=ctx.tenant_id,
                    stack_id=sid,
                    actor=ctx.user_id,
                    event_type="STACK_REMOVE_REQUESTED",
                    details={"generation": generation, "nodes": len(leftovers)},
                )
                spawn = True

        if spawn:
            log.info("teardown.requested", stack_id=str(sid), generation=generation)
            self._spawn(sid, self._teardown(sid, generation))
        return await self._reconciler.snapshot(sid)

    async def update_service(
        self,
        ctx: RequestContext,
        node_id: str | uuid.UUID,
        config: dict[str, Any],
    ) -> StackSnapshot:
        """
        Merge `config` over the node's current config and roll it out. An identical
        config on a live node is a no-op.
        """

        return await self._change_service(ctx, node_id, config, restart=False)

    async def restart_service(self, ctx: RequestContext, node_id: str | uuid.UUID) -> StackSnapshot:
        """
        Re-apply the node with its current config through RUNNING -> DEPLOYING -> RUNNING.
        A FAILED node is retried from PENDING.
        """

        return await self._change_service(ctx, node_id, {}, restart=True)

    async def connection_info(self, snap: StackSnapshot, node: NodeSnapshot) -> dict[str, Any]:
        """Address and credentials a dependent of `node` is rendered with."""

        namespace = tenant_namespace(self._settings.namespace_prefix, snap.tenant_id)
        return await self._connection(snap, node, namespace)

    async def _change_service(
        self,
        ctx: RequestContext,
        node_id: str | uuid.UUID,
        config: dict[str, Any],
        *,
        restart: bool,
    ) -> StackSnapshot:
        _require_mutation(ctx)
        nid = _parse_id(node_id, ServiceNotFound(str(node_id)))

        plan: _Plan | None = None
        acquired: uuid.UUID | None = None
        try:
            async with session_scope(self._session_factory) as session:
                stacks = StackRepo(session)
                nodes = NodeRepo(session)
                audit = AuditRepo(session)

                row = await nodes.get(nid)
                stack = None if row is None else await stacks.get_for_tenant(row.stack_id, ctx.tenant_id)
                if row is None or stack is None or stack.target == StackTarget.deleted:
                    raise ServiceNotFound(str(node_id))
                node = NodeSnapshot.from_row(row)
                if node.status == NodeStatus.deleted:
                    raise ServiceNotFound(str(node_id))

                stack_id = stack.id
                merged = {**node.config, **config}
                digest = config_hash(merged)
                if (
                    not restart
                    and digest == node.config_hash
                    and node.status in (NodeStatus.running, NodeStatus.deploying)
                ):
                    log.info("update.noop", stack_id=str(stack.id), node_id=str(nid))
                else:
                    plan = await self._plan_update(
                        stacks, nodes, audit, ctx, stack.id, node, merged, digest, config,
                        restart=restart,
                    )
                    acquired = plan.stack_id
        except BaseException:
            if acquired is not None:
                self._locks.release(acquired)
            raise

        if plan is not None:
            self._spawn(plan.stack_id, self._rollout(plan.state()))
        return await self._reconciler.snapshot(stack_id)

    async def wait_idle(self, stack_id: uuid.UUID | None = None) -> None:
        """Block until background rollouts (for one stack, or all) have finished."""

        while True:
            if stack_id is None:
                pending = [t for tasks in self._tasks.values() for t in tasks]
            else:
                pending = list(self._tasks.get(stack_id, ()))
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [t for ts in self._tasks.values() for t in ts]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # --- RolloutOps --------------------------------------------------------

    async def is_superseded(self, *, stack_id: str, generation: int) -> bool:
        async with session_scope(self._session_factory) as session:
            current = await StackRepo(session).current_generation(as_uuid(stack_id))
        return current != generation

    async def wait_for_dependencies(
        self, *, stack_id: str, node_id: str, generation: int
    ) -> DependencyOutcome:
        sid, nid = as_uuid(stack_id), as_uuid(node_id)
        while True:
            snap = await self._reconciler.snapshot(sid)
            if snap.generation != generation:
                return "superseded"
            node = snap.node(nid)
            if node is None:
                return "blocked"
            deps = snap.dependencies_of(nid)
            if all(d.status == NodeStatus.running for d in deps):
                return "ready"

            bad = next((d for d in deps if d.status in _BLOCKING), None)
            if bad is not None:
                if node.status == NodeStatus.pending:
                    reason = "failed" if bad.status == NodeStatus.failed else "is being removed"
                    async with session_scope(self._session_factory) as session:
                        await transition_node(
                            NodeRepo(session),
                            AuditRepo(session),
                            tenant_id=snap.tenant_id,
                            node=node,
                            target=NodeStatus.failed,
                            actor="deployer",
                            reason="dependency_blocked",
                            error=f"Blocked: dependency '{bad.recipe_id}' {reason}",
                        )
                log.info(
                    "rollout.dependency_blocked",
                    stack_id=stack_id,
                    node_id=node_id,
                    dependency=bad.recipe_id,
                    dependency_status=bad.status.value,
                )
                return "blocked"

            await asyncio.sleep(self._settings.rollout_poll_interval_seconds)
            await self._reconciler.reconcile(sid)

    async def apply_node(
        self,
        *,
        stack_id: str,
        node_id: str,
        generation: int,
        config: dict[str, Any],
        restart: bool = False,
    ) -> StepOutcome:
        sid, nid = as_uuid(stack_id), as_uuid(node_id)
        snap = await self._reconciler.snapshot(sid)
        node = snap.node(nid)
        if node is None:
            return "skipped"
        digest = config_hash(config)

        async with session_scope(self._session_factory) as session:
            if await StackRepo(session).current_generation(sid) != generation:
                return "superseded"
            issued = await self._issue_apply(
                NodeRepo(session),
                AuditRepo(session),
                snap,
                node,
                config,
                digest,
                generation,
                restart=restart,
            )
        if not issued:
            return "skipped"

        try:
            namespace, resources, labels = await self._render(
                snap, node, config, restart_generation=generation if restart else None
            )
            await self._retry(
                lambda: self._cluster.apply(namespace=namespace, resources=resources, labels=labels),
                what="cluster.apply",
            )
        except (OrchestratorError, ValueError) as e:
            message = e.message if isinstance(e, OrchestratorError) else str(e)
            log.warning(
                "rollout.apply_failed",
                stack_id=stack_id,
                node_id=node_id,
                recipe_id=node.recipe_id,
                error=message,
            )
            async with session_scope(self._session_factory) as session:
                await transition_node(
                    NodeRepo(session),
                    AuditRepo(session),
                    tenant_id=snap.tenant_id,
                    node=node,
                    target=NodeStatus.failed,
                    actor="deployer",
                    reason="create_failed",
                    error=f"Create failed: {message}",
                    expected_status=NodeStatus.deploying,
                    expected_generation=generation,
                )
            return "failed"

        log.info("rollout.applied", stack_id=stack_id, node_id=node_id, recipe_id=node.recipe_id)
        return "applied"

    async def teardown_node(self, *, stack_id: str, node_id: str, generation: int) -> StepOutcome:
        sid, nid = as_uuid(stack_id), as_uuid(node_id)

        snap: StackSnapshot | None = None
        node: NodeSnapshot | None = None
        for _ in range(_TEARDOWN_ATTEMPTS):
            snap = await self._reconciler.snapshot(sid)
            if snap.generation != generation:
                return "superseded"
            node = snap.node(nid)
            if node is None or node.status == NodeStatus.deleted:
                return "skipped"
            if node.status == NodeStatus.deleting:
                break
            kept_for = [d.recipe_id for d in snap.dependents_of(nid) if d.status not in _GONE]
            if kept_for:
                # A dependent that could not be marked DELETING still needs this node.
                log.warning(
                    "teardown.dependency_kept",
                    stack_id=stack_id,
                    node_id=node_id,
                    recipe_id=node.recipe_id,
                    dependents=kept_for,
                )
                return "blocked"
            async with session_scope(self._session_factory) as session:
                ok = await transition_node(
                    NodeRepo(session),
                    AuditRepo(session),
                    tenant_id=snap.tenant_id,
                    node=node,
                    target=NodeStatus.deleting,
                    actor="deployer",
                    reason="delete_issued",
                    generation=generation,
                )
            if ok:
                break
            # The reconciler moved the node between our read and write; read again.
        else:
            return "failed"

        if snap is None or node is None:
            return "failed"
        namespace = tenant_namespace(self._settings.namespace_prefix, snap.tenant_id)
        labels = ownership_labels(
            tenant_id=snap.tenant_id, stack_id=sid, node_id=nid, recipe_id=node.recipe_id
        )
        try:
            await self._retry(
                lambda: self._cluster.delete(namespace=namespace, labels=labels),
                what="cluster.delete",
            )
        except OrchestratorError as e:
            # Left in DELETING; the reconciler's timeout turns it FAILED.
            log.warning(
                "teardown.delete_failed",
                stack_id=stack_id,
                node_id=node_id,
                recipe_id=node.recipe_id,
                error=e.message,
            )
            return "failed"

        log.info("teardown.deleted", stack_id=stack_id, node_id=node_id, recipe_id=node.recipe_id)
        return "applied"

    async def settle(self, *, stack_id: str, generation: int) -> None:
        sid = as_uuid(stack_id)
        while True:
            if await self.is_superseded(stack_id=stack_id, generation=generation):
                return
            nodes = await self._reconciler.reconcile(sid)
            if not any(n.status in _SETTLING for n in nodes):
                return
            await asyncio.sleep(self._settings.rollout_poll_interval_seconds)

    # --- planning ----------------------------------------------------------

    @staticmethod
    def _desired_configs(
        graph: DependencyGraph, overrides: dict[str, Any]
    ) -> dict[str, dict[str, Any]]:
        desired = {r.slug: dict(r.default_config) for r in graph.nodes}
        desired[graph.root] = {**desired[graph.root], **overrides}
        return desired

    async def _plan_deploy(
        self,
        ctx: RequestContext,
        graph: DependencyGraph,
        desired: dict[str, dict[str, Any]],
    ) -> _Plan:
        """
        Returns with the stack's mutation lock held (`plan.locked`); the caller hands it
        to the rollout task or releases it when there is nothing to do. A redeploy that
        changes nothing returns without touching the lock, even while a rollout runs.
        """

        acquired: uuid.UUID | None = None
        try:
            async with session_scope(self._session_factory) as session:
                stacks = StackRepo(session)
                nodes = NodeRepo(session)
                audit = AuditRepo(session)

                stack = await stacks.active_for_root(
                    tenant_id=ctx.tenant_id, root_recipe_id=graph.root
                )
                created = stack is None
                if stack is None:
                    stack = await stacks.create(
                        tenant_id=ctx.tenant_id, root_recipe_id=graph.root, created_by=ctx.user_id
                    )
                current: dict[str, NodeSnapshot] = {}
                for row in await nodes.list_for_stack(stack.id):
                    snap = NodeSnapshot.from_row(row)
                    if snap.status != NodeStatus.deleted:
                        current[snap.recipe_id] = snap
                if any(n.status == NodeStatus.deleting for n in current.values()):
                    raise DeployConflict(str(stack.id))

                generation = stack.generation
                if not created and not any(
                    _needs_work(
                        current.get(slug),
                        config_hash(desired[slug]),
                        rollout_active=self._locks.is_busy(stack.id),
                    )
                    for slug in graph.order
                ):
                    return _Plan(
                        stack_id=stack.id,
                        tenant_id=ctx.tenant_id,
                        generation=generation,
                        locked=False,
                    )

                if not self._locks.try_acquire(stack.id):
                    raise DeployConflict(str(stack.id))
                acquired = stack.id
                if not created:
                    generation = await stacks.bump_generation(stack.id)

                plan = _Plan(stack_id=stack.id, tenant_id=ctx.tenant_id, generation=generation)
                node_ids: dict[str, uuid.UUID] = {}
                for position, slug in enumerate(graph.order):
                    cfg = desired[slug]
                    digest = config_hash(cfg)
                    existing = current.get(slug)
                    if existing is None:
                        row = await nodes.add(
                            stack_id=stack.id,
                            recipe_id=slug,
                            position=position,
                            config=cfg,
                            config_hash=digest,
                            generation=generation,
                        )
                        node_ids[slug] = row.id
                        plan.queue.append(str(row.id))
                        plan.configs[str(row.id)] = cfg
                        continue

                    node_ids[slug] = existing.id
                    if await self._requeue(
                        nodes, audit, ctx, existing, cfg, digest, generation, position
                    ):
                        plan.queue.append(str(existing.id))
                        plan.configs[str(existing.id)] = cfg

                edges = EdgeRepo(session)
                for dependent, dependency in graph.edges:
                    await edges.ensure(
                        stack_id=stack.id,
                        from_node_id=node_ids[dependent],
                        to_node_id=node_ids[dependency],
                    )

                await audit.add(
                    tenant_id=ctx.tenant_id,
                    stack_id=stack.id,
                    actor=ctx.user_id,
                    event_type="STACK_DEPLOY_REQUESTED",
                    details={
                        "root_recipe_id": graph.root,
                        "generation": generation,
                        "created": created,
                        "queued": len(plan.queue),
                    },
                )
        except BaseException:
            if acquired is not None:
                self._locks.release(acquired)
            raise

        log.info(
            "deploy.planned",
            stack_id=str(plan.stack_id),
            root_recipe_id=graph.root,
            generation=plan.generation,
            queued=len(plan.queue),
            created=created,
        )
        return plan

    async def _plan_update(
        self,
        stacks: StackRepo,
        nodes: NodeRepo,
        audit: AuditRepo,
        ctx: RequestContext,
        stack_id: uuid.UUID,
        node: NodeSnapshot,
        merged: dict[str, Any],
        digest: str,
        requested: dict[str, Any],
        *,
        restart: bool = False,
    ) -> _Plan:
        if node.status in (NodeStatus.pending, NodeStatus.deleting):
            raise DeployConflict(str(stack_id))
        if not self._locks.try_acquire(stack_id):
            raise DeployConflict(str(stack_id))
        try:
            generation = await stacks.bump_generation(stack_id)
            if node.status == NodeStatus.failed:
                await transition_node(
                    nodes,
                    audit,
                    tenant_id=ctx.tenant_id,
                    node=node,
                    target=NodeStatus.pending,
                    actor=ctx.user_id,
                    reason="redeploy_requested",
                    generation=generation,
                    config=merged,
                    config_hash=digest,
                )
            await audit.add(
                tenant_id=ctx.tenant_id,
                stack_id=stack_id,
                node_id=node.id,
                actor=ctx.user_id,
                event_type="SERVICE_RESTART_REQUESTED" if restart else "SERVICE_UPDATE_REQUESTED",
                details={"recipe_id": node.recipe_id, "config": requested, "generation": generation},
            )
        except BaseException:
            self._locks.release(stack_id)
            raise
        return _Plan(
            stack_id=stack_id,
            tenant_id=ctx.tenant_id,
            generation=generation,
            queue=[str(node.id)],
            configs={str(node.id): merged},
            restarts=[str(node.id)] if restart else [],
        )

    async def _requeue(
        self,
        nodes: NodeRepo,
        audit: AuditRepo,
        ctx: RequestContext,
        node: NodeSnapshot,
        config: dict[str, Any],
        digest: str,
        generation: int,
        position: int,
    ) -> bool:
        match node.status:
            case NodeStatus.failed:
                return await transition_node(
                    nodes,
                    audit,
                    tenant_id=ctx.tenant_id,
                    node=node,
                    target=NodeStatus.pending,
                    actor=ctx.user_id,
                    reason="redeploy_requested",
                    generation=generation,
                    config=config,
                    config_hash=digest,
                    position=position,
                )
            case NodeStatus.pending:
                return await nodes.set_config(
                    node_id=node.id,
                    expected_status=NodeStatus.pending,
                    expected_generation=node.generation,
                    config=config,
                    config_hash=digest,
                    generation=generation,
                )
            case NodeStatus.running | NodeStatus.deploying:
                # Config changes are issued by the rollout (RUNNING -> DEPLOYING).
                return node.config_hash != digest
            case _:
                return False

    # --- rollout tasks -----------------------------------------------------

    def _spawn(self, stack_id: uuid.UUID, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro, name=f"stack-rollout-{stack_id}")
        bucket = self._tasks.setdefault(stack_id, set())
        bucket.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            bucket.discard(t)
            if not bucket and self._tasks.get(stack_id) is bucket:
                self._tasks.pop(stack_id, None)

        task.add_done_callback(_done)

    async def _rollout(self, state: RolloutState) -> None:
        # Lock was taken by the planning step.
        stack_id = as_uuid(state["stack_id"])
        try:
            await self._run_graph(state)
        finally:
            self._locks.release(stack_id)

    async def _teardown(self, stack_id: uuid.UUID, generation: int) -> None:
        await self._locks.acquire(stack_id)
        try:
            snap = await self._reconciler.snapshot(stack_id)
            if snap.generation != generation:
                log.info("teardown.superseded", stack_id=str(stack_id), generation=generation)
                return
            # Reverse topological order: dependents go before their dependencies.
            queue = [
                str(n.id)
                for n in sorted(snap.nodes, key=lambda n: n.position, reverse=True)
                if n.status != NodeStatus.deleted
            ]
            await self._run_graph(
                {
                    "stack_id": str(stack_id),
                    "generation": generation,
                    "mode": "teardown",
                    "queue": queue,
                    "configs": {},
                    "blocked": [],
                    "failed": [],
                    "steps": [],
                }
            )
        finally:
            self._locks.release(stack_id)

    async def _run_graph(self, state: RolloutState) -> None:
        bound = log.bind(
            stack_id=state["stack_id"], generation=state["generation"], mode=state["mode"]
        )
        event = "rollout" if state["mode"] == "apply" else "teardown"
        bound.info(f"{event}.started", queued=len(state["queue"]))
        try:
            graph = build_rollout_graph(ops=self)
            final = await graph.ainvoke(
                state, config={"recursion_limit": recursion_limit_for(len(state["queue"]))}
            )
        except Exception as e:
            bound.exception(f"{event}.crashed")
            await self._abort_pending(state, f"Rollout aborted: {e}")
            return
        bound.info(
            f"{event}.finished",
            superseded=bool(final.get("superseded")),
            failed=final.get("failed", []),
            blocked=final.get("blocked", []),
            steps=len(final.get("steps", [])),
        )

    async def _abort_pending(self, state: RolloutState, message: str) -> None:
        """Fail queued nodes still PENDING so the stack does not look busy forever."""

        queued = {as_uuid(n) for n in state.get("queue", [])}
        snap = await self._reconciler.snapshot(as_uuid(state["stack_id"]))
        async with session_scope(self._session_factory) as session:
            nodes = NodeRepo(session)
            audit = AuditRepo(session)
            for node in snap.nodes:
                if node.id in queued and node.status == NodeStatus.pending:
                    await transition_node(
                        nodes,
                        audit,
                        tenant_id=snap.tenant_id,
                        node=node,
                        target=NodeStatus.failed,
                        actor="deployer",
                        reason="rollout_aborted",
                        error=message,
                    )

    # --- rendering ---------------------------------------------------------

    async def _issue_apply(
        self,
        nodes: NodeRepo,
        audit: AuditRepo,
        snap: StackSnapshot,
        node: NodeSnapshot,
        config: dict[str, Any],
        digest: str,
        generation: int,
        *,
        restart: bool = False,
    ) -> bool:
        changes = {"generation": generation, "config": config, "config_hash": digest}
        match node.status:
            case NodeStatus.pending:
                return await transition_node(
                    nodes,
                    audit,
                    tenant_id=snap.tenant_id,
                    node=node,
                    target=NodeStatus.deploying,
                    actor="deployer",
                    reason="create_issued",
                    **changes,
                )
            case NodeStatus.running | NodeStatus.deploying if node.config_hash == digest and not restart:
                return False
            case NodeStatus.running:
                return await transition_node(
                    nodes,
                    audit,
                    tenant_id=snap.tenant_id,
                    node=node,
                    target=NodeStatus.deploying,
                    actor="deployer",
                    reason="restart_issued" if restart else "update_issued",
                    **changes,
                )
            case NodeStatus.deploying:
                ok = await nodes.set_config(
                    node_id=node.id,
                    expected_status=NodeStatus.deploying,
                    expected_generation=node.generation,
                    **changes,
                )
                if ok:
                    await audit.add(
                        tenant_id=snap.tenant_id,
                        stack_id=snap.id,
                        node_id=node.id,
                        actor="deployer",
                        event_type="NODE_CONFIG_UPDATED",
                        details={"recipe_id": node.recipe_id, "generation": generation},
                    )
                return ok
            case _:
                return False

    async def _render(
        self,
        snap: StackSnapshot,
        node: NodeSnapshot,
        config: dict[str, Any],
        *,
        restart_generation: int | None = None,
    ) -> tuple[str, list[dict[str, Any]], dict[str, str]]:
        recipe = await self._resolve(node.recipe_id)
        namespace = tenant_namespace(self._settings.namespace_prefix, snap.tenant_id)

        deps: dict[str, dict[str, Any]] = {}
        for dep in snap.dependencies_of(node.id):
            deps[dep.recipe_id] = await self._connection(snap, dep, namespace)

        context = {
            "name": resource_name(node.recipe_id, snap.id),
            "namespace": namespace,
            "stack_id": str(snap.id),
            "config": config,
            "secrets": self._secrets(snap.id, recipe),
            "deps": deps,
        }
        labels = ownership_labels(
            tenant_id=snap.tenant_id, stack_id=snap.id, node_id=node.id, recipe_id=node.recipe_id
        )
        resources = render_manifest(recipe.manifest_template, context=context, labels=labels)
        if restart_generation is not None:
            # A changed pod template annotation makes the cluster replace running pods.
            annotate_pod_templates(resources, {ANNOTATION_RESTARTED: str(restart_generation)})
        return namespace, resources, labels

    async def _connection(
        self, snap: StackSnapshot, node: NodeSnapshot, namespace: str
    ) -> dict[str, Any]:
        recipe = await self._resolve(node.recipe_id)
        name = resource_name(node.recipe_id, snap.id)
        port = node.config.get("port")
        return {
            "name": name,
            "host": service_host(name, namespace),
            "port": "" if port is None else str(port),
            "config": dict(node.config),
            "secrets": self._secrets(snap.id, recipe),
        }

    def _secrets(self, stack_id: uuid.UUID, recipe: Recipe) -> dict[str, str]:
        return derive_secrets(
            seed=self._settings.secret_seed,
            stack_id=str(stack_id),
            recipe_id=recipe.slug,
            keys=recipe.secret_keys,
        )

    async def _resolve(self, recipe_id: str) -> Recipe:
        return await self._retry(lambda: self._catalog.resolve(recipe_id), what="catalog.resolve")

    async def _retry(self, op: Callable[[], Awaitable[T]], *, what: str) -> T:
        return await retry_transient(
            op,
            attempts=self._settings.transport_retry_attempts,
            base_delay=self._settings.transport_retry_base_delay_seconds,
            what=what,
        )


def _needs_work(node: NodeSnapshot | None, digest: str, *, rollout_active: bool) -> bool:
    if node is None:
        return True
    match node.status:
        case NodeStatus.failed:
            return True
        case NodeStatus.pending:
            # A queued node with the same config is already covered by the running rollout.
            return not rollout_active or node.config_hash != digest
        case NodeStatus.running | NodeStatus.deploying:
            return node.config_hash != digest
        case _:
            return False


# --- Module Notes -----------------------------------------------------------
# Lock ownership: deploy/update take the per-stack lock without waiting (a busy stack
# is a DeployConflict) and hand it to the rollout task; removal bumps the generation
# first and then queues for the lock, so the superseded rollout drains before the
# teardown starts.
