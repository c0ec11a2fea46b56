"""
stack_orchestrator.orchestrator

Orchestration package.

Responsibilities:
- Node lifecycle state machine and stack snapshots.
- Dependency graph expansion.
- Rollout state schema, nodes, routing, and LangGraph compilation.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Call sites should go through `services`; this package holds no I/O of its own.
