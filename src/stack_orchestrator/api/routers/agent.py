"""
stack_orchestrator.api.routers.agent

HTTP surface of the agent tool router.

Responsibilities:
- Publish tool declarations (name, description, schemas, destructive flag).
- Accept one tool call per request and return the `ToolResult` envelope.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from stack_orchestrator.agent.router import AgentToolRouter
from stack_orchestrator.agent.tools import ToolResult, tool_declarations
from stack_orchestrator.api.deps import agent_router_dep
from stack_orchestrator.auth.deps import get_request_context
from stack_orchestrator.auth.models import RequestContext

router = APIRouter(prefix="/agent", tags=["agent"])


@router.get("/tools")
async def list_tools() -> dict[str, Any]:
    return {"tools": tool_declarations()}


@router.post("/tools/call", response_model=ToolResult)
async def call_tool(
    payload: dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    agent: AgentToolRouter = Depends(agent_router_dep),
) -> ToolResult:
    # Always 200: failures are part of the result envelope so the agent can relay them.
    return await agent.call(ctx, payload)
