"""
stack_orchestrator.db

Persistence package (SQLAlchemy async).

Responsibilities:
- Provide ORM models, engine/session setup, and repositories for recipes,
  stacks, service nodes, edges, pending agent actions, and audit events.
"""

# Package marker.
