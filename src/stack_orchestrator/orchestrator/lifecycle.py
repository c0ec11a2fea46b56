"""
stack_orchestrator.orchestrator.lifecycle

Service Node lifecycle state machine.

Responsibilities:
- Declare the legal status transitions in one place.
- Provide the transitional/stable predicate used by the reconciler, the API
  poll cadence, and the agent.
"""

from __future__ import annotations

from collections.abc import Iterable

from stack_orchestrator.db.models import NodeStatus
from stack_orchestrator.errors import InvalidTransition

ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.pending: frozenset(
        {NodeStatus.deploying, NodeStatus.deleting, NodeStatus.failed}
    ),
    NodeStatus.deploying: frozenset(
        {NodeStatus.running, NodeStatus.failed, NodeStatus.deleting}
    ),
    NodeStatus.running: frozenset(
        {NodeStatus.deploying, NodeStatus.deleting, NodeStatus.failed}
    ),
    NodeStatus.deleting: frozenset({NodeStatus.deleted, NodeStatus.failed}),
    NodeStatus.failed: frozenset({NodeStatus.pending, NodeStatus.deleting}),
    NodeStatus.deleted: frozenset(),
}

TRANSITIONAL = frozenset({NodeStatus.pending, NodeStatus.deploying, NodeStatus.deleting})
STABLE = frozenset({NodeStatus.running, NodeStatus.failed, NodeStatus.deleted})

# Statuses the reconciler polls the cluster for.
OBSERVED = frozenset(
    {NodeStatus.deploying, NodeStatus.running, NodeStatus.deleting}
)


def check_transition(current: NodeStatus, target: NodeStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


def is_transitional(statuses: Iterable[NodeStatus]) -> bool:
    return any(s in TRANSITIONAL for s in statuses)


# --- Module Notes -----------------------------------------------------------
# FAILED -> DELETING lets a stack with failed services still be torn down;
# PENDING -> FAILED covers dependents blocked by a failed dependency.
