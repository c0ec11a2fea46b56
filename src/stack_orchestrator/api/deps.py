"""
stack_orchestrator.api.deps

FastAPI dependency wiring for the API layer.

Responsibilities:
- Provide dependency functions for settings, DB sessions and the shared
  orchestrator/agent containers.
- Encapsulate app.state access patterns.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stack_orchestrator.agent.router import AgentToolRouter
from stack_orchestrator.services.stack_service import StackOrchestrator
from stack_orchestrator.settings import Settings


def settings_dep(request: Request) -> Settings:
    return request.app.state.settings  # type: ignore[attr-defined]


def sessionmaker_from_app(request: Request) -> async_sessionmaker[AsyncSession]:
    # Created on startup in `stack_orchestrator.api.app.create_app`.
    return request.app.state.sessionmaker  # type: ignore[attr-defined]


async def db_session(
    session_factory: async_sessionmaker[AsyncSession] = Depends(sessionmaker_from_app),
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


def orchestrator_dep(request: Request) -> StackOrchestrator:
    return request.app.state.orchestrator  # type: ignore[attr-defined]


def agent_router_dep(request: Request) -> AgentToolRouter:
    return request.app.state.agent_router  # type: ignore[attr-defined]


# --- Module Notes -----------------------------------------------------------
# Services take the sessionmaker, not a request session: rollouts keep running
# after the 202 response is sent.
