"""
stack_orchestrator.cluster.client

Cluster API boundary.

Responsibilities:
- Declare the operations the orchestrator needs from a cluster (`ClusterApi`).
- Define the coarse observation model the reconciler maps onto node status.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Protocol


class ObservedPhase(enum.StrEnum):
    deploying = "deploying"
    ready = "ready"
    failed = "failed"
    absent = "absent"


@dataclass(frozen=True, slots=True)
class Observation:
    phase: ObservedPhase
    # Human-readable reason (e.g. "CrashLoopBackOff"); set for failures.
    detail: str | None = None
    # Trimmed raw state stored on the node as `observed_state`.
    raw: dict[str, Any] = field(default_factory=dict)


class ClusterApi(Protocol):
    """
    All mutations are idempotent: applying the same labelled resources twice converges
    on one set of objects, and deleting something already gone succeeds.
    Failures raise `ClusterUnavailable`.
    """

    async def apply(
        self, *, namespace: str, resources: list[dict[str, Any]], labels: dict[str, str]
    ) -> None: ...

    async def delete(self, *, namespace: str, labels: dict[str, str]) -> None: ...

    async def observe(self, *, namespace: str, labels: dict[str, str]) -> Observation: ...

    async def read_logs(
        self, *, namespace: str, labels: dict[str, str], tail_lines: int = 100
    ) -> str: ...

    async def list_nodes(self) -> list[dict[str, Any]]: ...

    async def list_pods(self) -> list[dict[str, Any]]: ...

    async def node_metrics(self) -> list[dict[str, Any]] | None: ...

    async def aclose(self) -> None: ...


# --- Module Notes -----------------------------------------------------------
# Node/pod/metrics payloads use the Kubernetes JSON shapes so the stats aggregator is
# backend-agnostic.
