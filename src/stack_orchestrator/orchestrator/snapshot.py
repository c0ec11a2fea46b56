"""
stack_orchestrator.orchestrator.snapshot

Read-only stack views.

Responsibilities:
- Freeze ORM rows into immutable snapshots safe to hand across tasks and layers.
- Derive the aggregate stack status and the transitional/stable predicate.
- Render the graph shape consumed by the UI (`nodes`, `edges`).
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from stack_orchestrator.db.models import NodeStatus, ServiceNode, Stack, StackEdge, StackTarget
from stack_orchestrator.orchestrator.lifecycle import is_transitional


@dataclass(frozen=True, slots=True)
class NodeSnapshot:
    id: uuid.UUID
    stack_id: uuid.UUID
    recipe_id: str
    position: int
    status: NodeStatus
    generation: int
    config: dict[str, Any]
    config_hash: str
    error: str | None
    observe_failures: int
    observed_state: dict[str, Any]
    status_changed_at: datetime

    @classmethod
    def from_row(cls, row: ServiceNode) -> NodeSnapshot:
        return cls(
            id=row.id,
            stack_id=row.stack_id,
            recipe_id=row.recipe_id,
            position=row.position,
            status=NodeStatus(row.status),
            generation=row.generation,
            config=dict(row.config or {}),
            config_hash=row.config_hash,
            error=row.error,
            observe_failures=row.observe_failures,
            observed_state=dict(row.observed_state or {}),
            status_changed_at=row.status_changed_at,
        )

    def as_graph_node(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "recipe_id": self.recipe_id,
            "status": self.status.value,
            "error": self.error,
            "config": self.config,
            "position": self.position,
            "status_changed_at": self.status_changed_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class EdgeSnapshot:
    id: uuid.UUID
    from_node_id: uuid.UUID
    to_node_id: uuid.UUID

    def as_graph_edge(self) -> dict[str, str]:
        return {"id": str(self.id), "from": str(self.from_node_id), "to": str(self.to_node_id)}


@dataclass(frozen=True, slots=True)
class StackSnapshot:
    id: uuid.UUID
    tenant_id: str
    root_recipe_id: str
    generation: int
    target: StackTarget
    created_at: datetime
    nodes: tuple[NodeSnapshot, ...]
    edges: tuple[EdgeSnapshot, ...]

    @property
    def transitional(self) -> bool:
        return is_transitional(n.status for n in self.nodes)

    @property
    def stable(self) -> bool:
        return not self.transitional

    @property
    def status(self) -> str:
        statuses = {n.status for n in self.nodes}
        if not statuses or statuses == {NodeStatus.deleted}:
            return "DELETED"
        if NodeStatus.deleting in statuses:
            return "DELETING"
        if statuses & {NodeStatus.pending, NodeStatus.deploying}:
            return "DEPLOYING"
        if NodeStatus.failed in statuses:
            return "FAILED"
        return "RUNNING"

    def node(self, node_id: uuid.UUID) -> NodeSnapshot | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def node_for_recipe(self, recipe_id: str) -> NodeSnapshot | None:
        return next((n for n in self.nodes if n.recipe_id == recipe_id), None)

    def dependencies_of(self, node_id: uuid.UUID) -> list[NodeSnapshot]:
        ids = {e.to_node_id for e in self.edges if e.from_node_id == node_id}
        return [n for n in self.nodes if n.id in ids]

    def dependents_of(self, node_id: uuid.UUID) -> list[NodeSnapshot]:
        ids = {e.from_node_id for e in self.edges if e.to_node_id == node_id}
        return [n for n in self.nodes if n.id in ids]

    def failed_nodes(self) -> list[NodeSnapshot]:
        return [n for n in self.nodes if n.status == NodeStatus.failed]

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "root_recipe_id": self.root_recipe_id,
            "generation": self.generation,
            "target": self.target.value,
            "status": self.status,
            "transitional": self.transitional,
            "created_at": self.created_at.isoformat(),
            "nodes": [n.as_graph_node() for n in self.nodes],
            "edges": [e.as_graph_edge() for e in self.edges],
        }


def snapshot_stack(
    stack: Stack, nodes: Iterable[ServiceNode], edges: Iterable[StackEdge]
) -> StackSnapshot:
    return StackSnapshot(
        id=stack.id,
        tenant_id=stack.tenant_id,
        root_recipe_id=stack.root_recipe_id,
        generation=stack.generation,
        target=StackTarget(stack.target),
        created_at=stack.created_at,
        nodes=tuple(
            NodeSnapshot.from_row(n) for n in sorted(nodes, key=lambda n: n.position)
        ),
        edges=tuple(
            EdgeSnapshot(id=e.id, from_node_id=e.from_node_id, to_node_id=e.to_node_id)
            for e in edges
        ),
    )


# --- Module Notes -----------------------------------------------------------
# Aggregate status is recomputed from nodes on every read; nothing stores it.
