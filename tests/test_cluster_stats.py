"""
tests.test_cluster_stats

Cluster capacity aggregation over Kubernetes-shaped node/pod/metrics payloads.
"""

from __future__ import annotations

import pytest

from stack_orchestrator.cluster.memory import InMemoryCluster
from stack_orchestrator.cluster.quantities import parse_cpu, parse_memory
from stack_orchestrator.cluster.stats import ClusterStatsAggregator
from stack_orchestrator.errors import ClusterUnavailable

GIB = 1024**3


def _node(name: str, cpu: str, memory: str, *, ready: bool = True) -> dict:
    return {
        "metadata": {"name": name},
        "status": {
            "capacity": {"cpu": cpu, "memory": memory},
            "allocatable": {"cpu": cpu, "memory": memory},
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
            "nodeInfo": {"kubeletVersion": "v1.30.2"},
        },
    }


def _pod(node: str | None, cpu: str, memory: str, *, phase: str = "Running") -> dict:
    spec: dict = {"containers": [{"resources": {"requests": {"cpu": cpu, "memory": memory}}}]}
    if node:
        spec["nodeName"] = node
    return {"spec": spec, "status": {"phase": phase}}


@pytest.mark.parametrize(
    ("raw", "cores"),
    [("4", 4.0), ("500m", 0.5), ("250000000n", 0.25), ("1500u", 0.0015), (None, 0.0)],
)
def test_parse_cpu(raw, cores) -> None:
    assert parse_cpu(raw) == pytest.approx(cores)


@pytest.mark.parametrize(
    ("raw", "size"),
    [("8Gi", 8 * GIB), ("512Mi", 512 * 1024**2), ("1G", 10**9), ("1000", 1000), (None, 0)],
)
def test_parse_memory(raw, size) -> None:
    assert parse_memory(raw) == size


@pytest.mark.asyncio
async def test_three_node_cluster_totals() -> None:
    cluster = InMemoryCluster(
        nodes=[_node("a", "4", "8Gi"), _node("b", "4", "8Gi"), _node("c", "4", "8Gi", ready=False)],
        pods=[
            _pod("a", "2", "1Gi"),
            _pod("b", "2500m", "2Gi"),
            _pod("c", "500m", "512Mi"),
            # Neither finished nor unscheduled pods hold capacity.
            _pod("a", "8", "8Gi", phase="Succeeded"),
            _pod(None, "1", "1Gi", phase="Pending"),
        ],
    )
    stats = await ClusterStatsAggregator(cluster=cluster).get_cluster_stats()

    assert stats.node_count == 3
    assert stats.capacity.cpu == pytest.approx(12.0)
    assert stats.capacity.memory == 24 * GIB
    assert stats.allocated.cpu == pytest.approx(5.0)
    assert stats.allocated.memory == 3 * GIB + 512 * 1024**2
    assert stats.pod_count == 3
    assert stats.metrics_available is False
    assert stats.used is None
    by_name = {n.name: n for n in stats.nodes}
    assert by_name["c"].ready is False
    assert by_name["a"].allocated.cpu == pytest.approx(2.0)
    assert by_name["a"].kubelet_version == "v1.30.2"

    payload = stats.as_dict()
    assert payload["capacity"]["cpu"] == pytest.approx(12.0)
    assert len(payload["nodes"]) == 3


@pytest.mark.asyncio
async def test_metrics_usage_is_summed_when_available() -> None:
    cluster = InMemoryCluster(
        nodes=[_node("a", "2", "4Gi"), _node("b", "2", "4Gi")],
        metrics=[
            {"metadata": {"name": "a"}, "usage": {"cpu": "250m", "memory": "1Gi"}},
            {"metadata": {"name": "b"}, "usage": {"cpu": "750m", "memory": "2Gi"}},
        ],
    )
    stats = await ClusterStatsAggregator(cluster=cluster).get_cluster_stats()

    assert stats.metrics_available is True
    assert stats.used.cpu == pytest.approx(1.0)
    assert stats.used.memory == 3 * GIB


@pytest.mark.asyncio
async def test_aggregator_failure_propagates() -> None:
    cluster = InMemoryCluster(stats_error="connection refused")
    with pytest.raises(ClusterUnavailable):
        await ClusterStatsAggregator(cluster=cluster).get_cluster_stats()
