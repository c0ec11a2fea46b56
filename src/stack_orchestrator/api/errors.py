"""
stack_orchestrator.api.errors

HTTP mapping for orchestrator errors.

Responsibilities:
- Translate `OrchestratorError` subclasses into status codes.
- Render every error as JSON `{error, detail, code}`.
"""

from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from stack_orchestrator.errors import (
    ActionNotFound,
    CatalogUnavailable,
    ChartSearchUnavailable,
    ClusterUnavailable,
    CycleDetected,
    DeployConflict,
    Forbidden,
    InvalidRecipeId,
    OrchestratorError,
    RecipeExists,
    RecipeNotFound,
    ServiceNotFound,
    StackNotFound,
    Unauthorized,
)
from stack_orchestrator.observability.logging import get_logger

log = get_logger(__name__)

_STATUS: tuple[tuple[type[OrchestratorError], int], ...] = (
    (RecipeNotFound, 404),
    (StackNotFound, 404),
    (ServiceNotFound, 404),
    (ActionNotFound, 404),
    (InvalidRecipeId, 422),
    (CycleDetected, 422),
    (RecipeExists, 409),
    (DeployConflict, 409),
    (CatalogUnavailable, 503),
    (ChartSearchUnavailable, 503),
    (ClusterUnavailable, 503),
    (Unauthorized, 401),
    (Forbidden, 403),
)

# The stats view has no retry semantics for the UI; an aggregator failure is a 500.
_STATS_PATH = "/cluster/stats"


class ErrorResponse(BaseModel):
    error: str
    detail: str
    code: str | None = None


def status_for(exc: OrchestratorError, *, path: str = "") -> int:
    if isinstance(exc, ClusterUnavailable) and path == _STATS_PATH:
        return 500
    for exc_type, status in _STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500


async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    status = status_for(exc, path=request.url.path)
    if status >= 500:
        log.warning("request.failed", error_type=type(exc).__name__, error=exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if status == 401 else None
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(
            error=type(exc).__name__, detail=exc.message, code=exc.code
        ).model_dump(),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error="HTTPException", detail=str(exc.detail)).model_dump(),
        headers=getattr(exc, "headers", None),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]


# --- Module Notes -----------------------------------------------------------
# Request validation errors keep FastAPI's default 422 body; only orchestrator and
# HTTP exceptions are reshaped here.
