"""
stack_orchestrator.api.app

FastAPI app factory for the Stack Deployment Orchestrator.

Responsibilities:
- Build the FastAPI application and register routers, middleware and error handlers.
- Create and dispose shared infrastructure (DB engine, cluster backend, chart search
  HTTP client) and the `StackOrchestrator` / `AgentToolRouter` containers.
- Provide a single composition root where cross-cutting concerns live.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from stack_orchestrator.agent.chart_search import ChartSearchClient
from stack_orchestrator.agent.router import AgentToolRouter
from stack_orchestrator.api.errors import register_error_handlers
from stack_orchestrator.api.routers.agent import router as agent_router
from stack_orchestrator.api.routers.catalog import router as catalog_router
from stack_orchestrator.api.routers.cluster import router as cluster_router
from stack_orchestrator.api.routers.dev_auth import router as dev_auth_router
from stack_orchestrator.api.routers.health import router as health_router
from stack_orchestrator.api.routers.stack import router as stack_router
from stack_orchestrator.catalog.seed import seed_catalog
from stack_orchestrator.cluster.client import ClusterApi
from stack_orchestrator.cluster.factory import build_cluster
from stack_orchestrator.db.init_db import init_db
from stack_orchestrator.db.session import create_engine, create_sessionmaker
from stack_orchestrator.observability.logging import configure_logging, get_logger
from stack_orchestrator.observability.middleware import RequestContextMiddleware
from stack_orchestrator.services.stack_service import StackOrchestrator
from stack_orchestrator.settings import Settings, get_settings

log = get_logger(__name__)


def create_app(
    *,
    settings: Settings,
    cluster: ClusterApi | None = None,
    chart_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    `cluster` and `chart_transport` replace the configured backends (tests, local demos).
    """

    configure_logging(service_name=settings.service_name, level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("startup", env=settings.env, cluster_backend=settings.cluster_backend)
        engine = create_engine(settings)
        session_factory = create_sessionmaker(engine)
        if settings.env in ("dev", "test"):
            await init_db(engine)
        if settings.seed_catalog:
            await seed_catalog(session_factory)

        http = httpx.AsyncClient(
            timeout=settings.chart_search_timeout_seconds, transport=chart_transport
        )
        orchestrator = StackOrchestrator(
            session_factory=session_factory,
            cluster=cluster if cluster is not None else build_cluster(settings),
            settings=settings,
        )
        app.state.engine = engine
        app.state.sessionmaker = session_factory
        app.state.orchestrator = orchestrator
        app.state.agent_router = AgentToolRouter(
            orchestrator=orchestrator,
            session_factory=session_factory,
            chart_search=ChartSearchClient(base_url=settings.chart_search_url, http=http),
            settings=settings,
        )
        try:
            yield
        finally:
            # Background rollouts are cancelled before the engine goes away.
            await orchestrator.aclose()
            await http.aclose()
            await engine.dispose()
            log.info("shutdown")

    app = FastAPI(
        title="Stack Deployment Orchestrator",
        version="0.1.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    # Auth dependencies resolve `get_settings`; pin them to the settings this app was built with.
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(RequestContextMiddleware)
    register_error_handlers(app)
    app.include_router(health_router, tags=["health"])
    app.include_router(dev_auth_router)
    app.include_router(stack_router)
    app.include_router(cluster_router)
    app.include_router(catalog_router)
    app.include_router(agent_router)
    return app


# --- Module Notes -----------------------------------------------------------
# App composition stays here; business logic stays in services, orchestrator and
# agent layers.
