"""
stack_orchestrator.api.routers.cluster

Cluster capacity endpoint.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from stack_orchestrator.api.deps import orchestrator_dep
from stack_orchestrator.auth.deps import get_request_context
from stack_orchestrator.auth.models import RequestContext
from stack_orchestrator.services.stack_service import StackOrchestrator

router = APIRouter(prefix="/cluster", tags=["cluster"])


@router.get("/stats")
async def cluster_stats(
    ctx: RequestContext = Depends(get_request_context),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    # Aggregator failures surface as 500 (see `api.errors.status_for`).
    stats = await orch.stats.get_cluster_stats()
    return stats.as_dict()
