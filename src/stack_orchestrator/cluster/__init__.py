"""
stack_orchestrator.cluster

Cluster access package.

Responsibilities:
- Define the `ClusterApi` boundary the deployer, reconciler and stats aggregator use.
- Provide the Kubernetes REST backend and an in-memory backend.
- Aggregate cluster-wide capacity/allocation stats.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Backends are selected in `cluster.factory` from settings; callers only see the protocol.
