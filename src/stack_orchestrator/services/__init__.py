"""
stack_orchestrator.services

Service-layer package.

Responsibilities:
- Own transaction boundaries and lifecycle writes.
- Coordinate catalog, dependency graph, cluster backend and rollout graph.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Services take a sessionmaker and a `ClusterApi`; tests swap in SQLite files and the
# in-memory cluster.
