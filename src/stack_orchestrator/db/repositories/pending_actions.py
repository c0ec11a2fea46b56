"""
stack_orchestrator.db.repositories.pending_actions

Repository for `PendingAction` entities (parked destructive agent calls).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from stack_orchestrator.db.models import PendingAction, PendingActionStatus, utcnow


class PendingActionRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        tenant_id: str,
        user_id: str,
        tool: str,
        arguments: dict[str, Any],
        summary: str,
        expires_at: datetime,
    ) -> PendingAction:
        action = PendingAction(
            tenant_id=tenant_id,
            user_id=user_id,
            tool=tool,
            arguments=arguments,
            summary=summary,
            status=PendingActionStatus.pending,
            expires_at=expires_at,
        )
        self._session.add(action)
        await self._session.flush()
        return action

    async def get(self, action_id: uuid.UUID) -> PendingAction | None:
        return await self._session.get(PendingAction, action_id, populate_existing=True)

    async def resolve(self, action_id: uuid.UUID, *, status: PendingActionStatus) -> bool:
        """
        Move a PENDING action to a final status exactly once.
        A concurrent confirm of the same action loses the race and gets False.
        """

        stmt = (
            update(PendingAction)
            .where(
                PendingAction.id == action_id,
                PendingAction.status == PendingActionStatus.pending,
            )
            .values(status=status, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1
