"""
stack_orchestrator.cluster.factory

Backend selection for `ClusterApi`.
"""

from __future__ import annotations

from stack_orchestrator.cluster.client import ClusterApi
from stack_orchestrator.cluster.kubernetes import KubernetesClusterApi
from stack_orchestrator.cluster.memory import InMemoryCluster
from stack_orchestrator.settings import Settings


def _dev_node() -> dict[str, object]:
    # One schedulable node so the stats view has something to show in local dev.
    return {
        "metadata": {"name": "local-dev"},
        "status": {
            "capacity": {"cpu": "4", "memory": "8Gi", "pods": "110"},
            "allocatable": {"cpu": "4", "memory": "8Gi", "pods": "110"},
            "conditions": [{"type": "Ready", "status": "True"}],
            "nodeInfo": {"kubeletVersion": "in-memory"},
        },
    }


def build_cluster(settings: Settings) -> ClusterApi:
    if settings.cluster_backend == "kubernetes":
        return KubernetesClusterApi(settings=settings)
    return InMemoryCluster(nodes=[_dev_node()])
