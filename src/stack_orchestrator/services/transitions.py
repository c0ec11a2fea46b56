"""
stack_orchestrator.services.transitions

Single write path for node lifecycle transitions.

Responsibilities:
- Apply a compare-and-set transition on a service node.
- Append the matching `NODE_STATUS` audit event and log line when it lands.
"""

from __future__ import annotations

import uuid
from typing import Any

from stack_orchestrator.db.models import NodeStatus
from stack_orchestrator.db.repositories.audit import AuditRepo
from stack_orchestrator.db.repositories.stacks import NodeRepo
from stack_orchestrator.observability.logging import get_logger
from stack_orchestrator.orchestrator.snapshot import NodeSnapshot

log = get_logger(__name__)


async def transition_node(
    nodes: NodeRepo,
    audit: AuditRepo,
    *,
    tenant_id: str,
    node: NodeSnapshot,
    target: NodeStatus,
    actor: str,
    reason: str,
    error: str | None = None,
    expected_status: NodeStatus | None = None,
    expected_generation: int | None = None,
    **changes: Any,
) -> bool:
    """
    Returns False (and writes nothing) when the node moved on since `node` was read.
    """

    from_status = expected_status or node.status
    ok = await nodes.transition(
        node_id=node.id,
        expected_status=from_status,
        expected_generation=node.generation if expected_generation is None else expected_generation,
        status=target,
        error=error,
        **changes,
    )
    if not ok:
        log.debug("node.stale_write_dropped", node_id=str(node.id), actor=actor, target=target.value)
        return False
    await audit.add(
        tenant_id=tenant_id,
        stack_id=node.stack_id,
        node_id=node.id,
        actor=actor,
        event_type="NODE_STATUS",
        details={
            "recipe_id": node.recipe_id,
            "from": from_status.value,
            "to": target.value,
            "reason": reason,
            "error": error,
        },
    )
    log.info(
        "node.transition",
        stack_id=str(node.stack_id),
        node_id=str(node.id),
        recipe_id=node.recipe_id,
        from_status=from_status.value,
        to_status=target.value,
        reason=reason,
        actor=actor,
    )
    return True


def as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(value)
