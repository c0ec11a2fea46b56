"""
stack_orchestrator.api.routers.health

Health and readiness endpoints.

Responsibilities:
- Provide liveness probe (`/healthz`).
- Provide readiness probe (`/readyz`) with DB connectivity validation.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from stack_orchestrator.api.deps import db_session, settings_dep
from stack_orchestrator.settings import Settings

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
) -> dict[str, str]:
    await session.execute(text("SELECT 1"))
    return {"status": "ready", "cluster_backend": settings.cluster_backend}


# --- Module Notes -----------------------------------------------------------
# Readiness does not probe the cluster API; a cluster outage shows up per request
# as 503 instead of taking the whole service out of rotation.
