"""
stack_orchestrator.api.routers.catalog

Catalog browsing endpoints.

Responsibilities:
- List/search published recipes by free text and category.
- Return one recipe with its default config and manifest template.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from stack_orchestrator.api.deps import orchestrator_dep
from stack_orchestrator.auth.deps import get_request_context
from stack_orchestrator.auth.models import RequestContext
from stack_orchestrator.services.stack_service import StackOrchestrator

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("")
async def list_catalog(
    search: str | None = Query(default=None, max_length=128),
    category: str | None = Query(default=None, max_length=64),
    limit: int = Query(default=50, ge=1, le=200),
    ctx: RequestContext = Depends(get_request_context),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    recipes = await orch.catalog.search(query=search, category=category, limit=limit)
    return {"recipes": [r.summary() for r in recipes]}


@router.get("/{slug}")
async def get_recipe(
    slug: str,
    ctx: RequestContext = Depends(get_request_context),
    orch: StackOrchestrator = Depends(orchestrator_dep),
) -> dict[str, Any]:
    recipe = await orch.catalog.resolve(slug)
    return recipe.detail()


# --- Module Notes -----------------------------------------------------------
# Publishing goes through the agent's `create_catalog_entry` tool, which also
# validates the entry against the single-container template.
