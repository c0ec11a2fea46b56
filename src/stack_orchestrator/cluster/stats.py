"""
stack_orchestrator.cluster.stats

Cluster Stats Aggregator.

Responsibilities:
- `get_cluster_stats()`: one point-in-time, cluster-wide summary (node count,
  capacity, allocatable, allocated requests, optional live usage).
- Report failures wholesale as `ClusterUnavailable`; there is no useful partial result.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any

from stack_orchestrator.cluster.client import ClusterApi
from stack_orchestrator.cluster.quantities import parse_cpu, parse_memory
from stack_orchestrator.errors import ClusterUnavailable
from stack_orchestrator.observability.logging import get_logger

log = get_logger(__name__)

_TERMINATED_POD_PHASES = frozenset({"Succeeded", "Failed"})


@dataclass(frozen=True, slots=True)
class Resources:
    # CPU in cores, memory in bytes.
    cpu: float = 0.0
    memory: int = 0

    def __add__(self, other: Resources) -> Resources:
        return Resources(cpu=self.cpu + other.cpu, memory=self.memory + other.memory)


@dataclass(frozen=True, slots=True)
class NodeStats:
    name: str
    ready: bool
    capacity: Resources
    allocatable: Resources
    allocated: Resources
    used: Resources | None
    pod_count: int
    kubelet_version: str


@dataclass(frozen=True, slots=True)
class ClusterStats:
    node_count: int
    capacity: Resources
    allocatable: Resources
    allocated: Resources
    used: Resources | None
    metrics_available: bool
    pod_count: int
    nodes: tuple[NodeStats, ...]

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _resources(raw: dict[str, Any] | None) -> Resources:
    raw = raw or {}
    return Resources(cpu=parse_cpu(raw.get("cpu")), memory=parse_memory(raw.get("memory")))


def _pod_requests(pod: dict[str, Any]) -> Resources:
    total = Resources()
    for container in (pod.get("spec") or {}).get("containers") or []:
        requests = (container.get("resources") or {}).get("requests")
        total = total + _resources(requests)
    return total


class ClusterStatsAggregator:
    def __init__(self, *, cluster: ClusterApi) -> None:
        self._cluster = cluster

    async def get_cluster_stats(self) -> ClusterStats:
        try:
            nodes, pods, metrics = await asyncio.gather(
                self._cluster.list_nodes(),
                self._cluster.list_pods(),
                self._cluster.node_metrics(),
            )
        except ClusterUnavailable:
            log.warning("cluster.stats_unavailable")
            raise

        allocated_by_node: dict[str, Resources] = {}
        pods_by_node: dict[str, int] = {}
        for pod in pods:
            # Finished pods no longer hold their requests.
            if (pod.get("status") or {}).get("phase") in _TERMINATED_POD_PHASES:
                continue
            node_name = (pod.get("spec") or {}).get("nodeName")
            if not node_name:
                continue
            allocated_by_node[node_name] = allocated_by_node.get(node_name, Resources()) + (
                _pod_requests(pod)
            )
            pods_by_node[node_name] = pods_by_node.get(node_name, 0) + 1

        usage_by_node: dict[str, Resources] = {}
        if metrics is not None:
            for item in metrics:
                name = (item.get("metadata") or {}).get("name")
                if name:
                    usage_by_node[name] = _resources(item.get("usage"))

        node_stats: list[NodeStats] = []
        for node in nodes:
            name = (node.get("metadata") or {}).get("name", "unknown")
            status = node.get("status") or {}
            conditions = status.get("conditions") or []
            node_stats.append(
                NodeStats(
                    name=name,
                    ready=any(
                        c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
                    ),
                    capacity=_resources(status.get("capacity")),
                    allocatable=_resources(status.get("allocatable")),
                    allocated=allocated_by_node.get(name, Resources()),
                    used=usage_by_node.get(name) if metrics is not None else None,
                    pod_count=pods_by_node.get(name, 0),
                    kubelet_version=(status.get("nodeInfo") or {}).get("kubeletVersion", "unknown"),
                )
            )

        def _sum(attr: str) -> Resources:
            total = Resources()
            for n in node_stats:
                total = total + getattr(n, attr)
            return total

        used: Resources | None = None
        if metrics is not None:
            used = Resources()
            for n in node_stats:
                if n.used is not None:
                    used = used + n.used

        return ClusterStats(
            node_count=len(node_stats),
            capacity=_sum("capacity"),
            allocatable=_sum("allocatable"),
            allocated=_sum("allocated"),
            used=used,
            metrics_available=metrics is not None,
            pod_count=sum(n.pod_count for n in node_stats),
            nodes=tuple(node_stats),
        )


# --- Module Notes -----------------------------------------------------------
# Pods not yet scheduled (no nodeName) are excluded from allocation; they do not
# consume any node's capacity yet.
