"""
stack_orchestrator.db.repositories.audit

Repository for `AuditEvent` entities.

Responsibilities:
- Append audit events (node transitions, rollout/teardown steps, agent actions).
- Query the audit trail of a stack in insertion order.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stack_orchestrator.db.models import AuditEvent


class AuditRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        *,
        tenant_id: str,
        actor: str,
        event_type: str,
        details: dict[str, Any],
        stack_id: uuid.UUID | None = None,
        node_id: uuid.UUID | None = None,
    ) -> AuditEvent:
        # Append-only; nothing in the service updates or deletes audit rows.
        ev = AuditEvent(
            tenant_id=tenant_id,
            stack_id=stack_id,
            node_id=node_id,
            actor=actor,
            event_type=event_type,
            details=details,
        )
        self._session.add(ev)
        await self._session.flush()
        return ev

    async def list_for_stack(
        self, stack_id: uuid.UUID, *, event_type: str | None = None, limit: int = 500
    ) -> list[AuditEvent]:
        stmt = select(AuditEvent).where(AuditEvent.stack_id == stack_id)
        if event_type is not None:
            stmt = stmt.where(AuditEvent.event_type == event_type)
        stmt = stmt.order_by(AuditEvent.id).limit(limit)
        return list((await self._session.execute(stmt)).scalars().all())


# --- Module Notes -----------------------------------------------------------
# Ordering by the integer key (not created_at) keeps same-millisecond events stable.
