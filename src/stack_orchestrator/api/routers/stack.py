"""
stack_orchestrator.api.routers.stack

Stack endpoints used by the UI.

Responsibilities:
- Serve the reconciled stack graph, with a poll hint while anything is transitional.
- Stream snapshots as NDJSON until a stack settles.
- Accept deploy / remove / update / restart requests and answer 202 while the
  rollout runs in the background.
- Serve a service's in-cluster connection info.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.status import HTTP_202_ACCEPTED

from stack_orchestrator.api.deps import orchestrator_dep
from stack_orchestrator.auth.deps import get_request_context, require_mutation_rights
from stack_orchestrator.auth.models import RequestContext
from stack_orchestrator.observability.logging import get_logger
from stack_orchestrator.services.stack_service import StackOrchestrator

log = get_logger(__name__)

router = APIRouter(prefix="/stack", tags=["stack"])


class DeployRequest(BaseModel):
    recipe_id: str = Field(min_length=1, max_length=64)
    config: dict[str, Any] = Field(default_factory=dict)


class UpdateRequest(BaseModel):
    config: dict[str, Any]


@router.get("")
async def get_stack(
    stack_id: str | None = Query(default=None),
    ctx: RequestContext = Depends(get_request_context),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    if stack_id is None:
        snaps = await orch.list_stacks(ctx)
    else:
        snaps = [await orch.get_stack(ctx, stack_id)]
    return orch.graph_view(snaps)


@router.get("/{stack_id}/watch")
async def watch_stack(
    stack_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> StreamingResponse:
    snapshots = await orch.watch_stack(ctx, stack_id)

    async def _lines() -> AsyncIterator[str]:
        async for snap in snapshots:
            yield json.dumps(snap.as_dict()) + "\n"

    return StreamingResponse(_lines(), media_type="application/x-ndjson")


@router.get("/{stack_id}/audit")
async def stack_audit(
    stack_id: str,
    limit: int = Query(default=500, ge=1, le=5000),
    ctx: RequestContext = Depends(get_request_context),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    return {"stack_id": stack_id, "events": await orch.audit_trail(ctx, stack_id, limit=limit)}


@router.post("", status_code=HTTP_202_ACCEPTED)
async def deploy_stack(
    body: DeployRequest,
    ctx: RequestContext = Depends(require_mutation_rights),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    snap = await orch.deployer.deploy_stack(ctx, body.recipe_id, body.config)
    log.info("api.deploy_accepted", stack_id=str(snap.id), recipe_id=body.recipe_id)
    return snap.as_dict()


@router.delete("/{stack_id}", status_code=HTTP_202_ACCEPTED)
async def remove_stack(
    stack_id: str,
    ctx: RequestContext = Depends(require_mutation_rights),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    return (await orch.deployer.remove_stack(ctx, stack_id)).as_dict()


@router.patch("/nodes/{node_id}", status_code=HTTP_202_ACCEPTED)
async def update_service(
    node_id: str,
    body: UpdateRequest,
    ctx: RequestContext = Depends(require_mutation_rights),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    return (await orch.deployer.update_service(ctx, node_id, body.config)).as_dict()


@router.post("/nodes/{node_id}/restart", status_code=HTTP_202_ACCEPTED)
async def restart_service(
    node_id: str,
    ctx: RequestContext = Depends(require_mutation_rights),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    snap = await orch.deployer.restart_service(ctx, node_id)
    log.info("api.restart_accepted", stack_id=str(snap.id), node_id=node_id)
    return snap.as_dict()


@router.get("/nodes/{node_id}/connection")
async def connection_info(
    node_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    return await orch.connection_info(ctx, node_id)


# --- Module Notes -----------------------------------------------------------
# 202 bodies are the snapshot at acceptance time; clients follow progress through
# `GET /stack?stack_id=` or the watch stream.
