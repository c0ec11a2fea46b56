"""
stack_orchestrator.cluster.memory

In-memory `ClusterApi` backend.

Responsibilities:
- Back local development (`STACKO_CLUSTER_BACKEND=memory`) and the test-suite.
- Simulate rollout progress across observations, failures, stuck workloads, and
  transient API errors.
- Record every mutation and the per-stack mutation concurrency so ordering and
  serialization can be asserted.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from stack_orchestrator.cluster.client import Observation, ObservedPhase
from stack_orchestrator.cluster.naming import LABEL_NODE, LABEL_RECIPE, LABEL_STACK
from stack_orchestrator.errors import ClusterUnavailable


@dataclass(frozen=True, slots=True)
class Mutation:
    op: str  # "apply" | "delete"
    recipe_id: str
    stack_id: str
    node_id: str


@dataclass(slots=True)
class _Workload:
    namespace: str
    recipe_id: str
    stack_id: str
    resources: list[dict[str, Any]]
    replicas: int
    observations: int = 0
    deleted: bool = False


def _replicas(resources: list[dict[str, Any]]) -> int:
    total = 0
    for r in resources:
        if r.get("kind") in ("Deployment", "StatefulSet"):
            raw = (r.get("spec") or {}).get("replicas")
            total += 1 if raw in (None, "") else int(raw)
    return total


@dataclass
class InMemoryCluster:
    # Seconds each mutation takes (lets tests widen race windows).
    mutation_delay: float = 0.0
    # Observations after an apply that still report "deploying".
    ready_after: int = 1
    # recipe id -> failure detail reported on observe.
    failing: dict[str, str] = field(default_factory=dict)
    # recipe ids that never become ready.
    stuck: set[str] = field(default_factory=set)
    # recipe ids whose resources linger after delete.
    stuck_deleting: set[str] = field(default_factory=set)
    # recipe id -> message; apply is rejected (not retryable).
    reject_apply: dict[str, str] = field(default_factory=dict)
    # recipe id -> number of transient apply errors still to raise.
    apply_errors: dict[str, int] = field(default_factory=dict)
    # recipe id -> number of transient observe errors still to raise.
    observe_errors: dict[str, int] = field(default_factory=dict)
    logs: dict[str, str] = field(default_factory=dict)

    # Stats fixtures in Kubernetes JSON shape.
    nodes: list[dict[str, Any]] = field(default_factory=list)
    pods: list[dict[str, Any]] = field(default_factory=list)
    metrics: list[dict[str, Any]] | None = None
    stats_error: str | None = None

    mutations: list[Mutation] = field(default_factory=list, init=False)
    max_in_flight: dict[str, int] = field(default_factory=lambda: defaultdict(int), init=False)

    _workloads: dict[str, _Workload] = field(default_factory=dict, init=False)
    _in_flight: dict[str, int] = field(default_factory=lambda: defaultdict(int), init=False)

    async def _mutate(self, op: str, labels: dict[str, str]) -> None:
        stack_id = labels[LABEL_STACK]
        self.mutations.append(
            Mutation(
                op=op,
                recipe_id=labels.get(LABEL_RECIPE, ""),
                stack_id=stack_id,
                node_id=labels[LABEL_NODE],
            )
        )
        self._in_flight[stack_id] += 1
        self.max_in_flight[stack_id] = max(self.max_in_flight[stack_id], self._in_flight[stack_id])
        try:
            if self.mutation_delay:
                await asyncio.sleep(self.mutation_delay)
        finally:
            self._in_flight[stack_id] -= 1

    async def apply(
        self, *, namespace: str, resources: list[dict[str, Any]], labels: dict[str, str]
    ) -> None:
        recipe_id = labels.get(LABEL_RECIPE, "")
        if recipe_id in self.reject_apply:
            raise ClusterUnavailable(self.reject_apply[recipe_id], retryable=False)
        if self.apply_errors.get(recipe_id, 0) > 0:
            self.apply_errors[recipe_id] -= 1
            raise ClusterUnavailable(f"apply {recipe_id}: connection reset")
        await self._mutate("apply", labels)
        self._workloads[labels[LABEL_NODE]] = _Workload(
            namespace=namespace,
            recipe_id=recipe_id,
            stack_id=labels[LABEL_STACK],
            resources=[dict(r) for r in resources],
            replicas=_replicas(resources),
        )

    async def delete(self, *, namespace: str, labels: dict[str, str]) -> None:
        await self._mutate("delete", labels)
        node_id = labels[LABEL_NODE]
        workload = self._workloads.get(node_id)
        if workload is None:
            return
        if workload.recipe_id in self.stuck_deleting:
            workload.deleted = True
        else:
            del self._workloads[node_id]

    async def observe(self, *, namespace: str, labels: dict[str, str]) -> Observation:
        recipe_id = labels.get(LABEL_RECIPE, "")
        if self.observe_errors.get(recipe_id, 0) > 0:
            self.observe_errors[recipe_id] -= 1
            raise ClusterUnavailable(f"observe {recipe_id}: i/o timeout")

        workload = self._workloads.get(labels[LABEL_NODE])
        if workload is None:
            return Observation(ObservedPhase.absent)
        raw = {"replicas": workload.replicas, "observations": workload.observations}
        if workload.deleted:
            return Observation(ObservedPhase.deploying, raw=raw)
        if recipe_id in self.failing:
            return Observation(ObservedPhase.failed, self.failing[recipe_id], raw)
        workload.observations += 1
        if recipe_id in self.stuck or workload.observations <= self.ready_after:
            return Observation(ObservedPhase.deploying, raw=raw)
        return Observation(ObservedPhase.ready, raw=raw)

    async def read_logs(
        self, *, namespace: str, labels: dict[str, str], tail_lines: int = 100
    ) -> str:
        text = self.logs.get(labels.get(LABEL_RECIPE, ""), "")
        return "\n".join(text.splitlines()[-tail_lines:])

    def _check_stats(self) -> None:
        if self.stats_error is not None:
            raise ClusterUnavailable(self.stats_error)

    async def list_nodes(self) -> list[dict[str, Any]]:
        self._check_stats()
        return list(self.nodes)

    async def list_pods(self) -> list[dict[str, Any]]:
        self._check_stats()
        return list(self.pods)

    async def node_metrics(self) -> list[dict[str, Any]] | None:
        self._check_stats()
        return None if self.metrics is None else list(self.metrics)

    async def aclose(self) -> None:
        return None

    # --- test/dev helpers -------------------------------------------------

    def has_workload(self, node_id: str) -> bool:
        return node_id in self._workloads

    def drop_workload(self, node_id: str) -> None:
        """Simulate an out-of-band deletion (drift)."""

        self._workloads.pop(node_id, None)

    def resources_for(self, node_id: str) -> list[dict[str, Any]]:
        workload = self._workloads.get(node_id)
        return [] if workload is None else list(workload.resources)

    def ops(self, stack_id: str | None = None) -> list[tuple[str, str]]:
        return [
            (m.op, m.recipe_id)
            for m in self.mutations
            if stack_id is None or m.stack_id == stack_id
        ]


# --- Module Notes -----------------------------------------------------------
# A zero-replica workload reports ready like any other once its observations pass
# `ready_after`; scale-to-zero therefore settles back in RUNNING.
