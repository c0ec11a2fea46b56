"""
tests.conftest

Shared fixtures: a temporary SQLite database with the built-in catalog, an in-memory
cluster, and an orchestrator wired with fast poll intervals.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stack_orchestrator.auth.models import RequestContext
from stack_orchestrator.catalog.seed import seed_catalog
from stack_orchestrator.cluster.memory import InMemoryCluster
from stack_orchestrator.db.init_db import init_db
from stack_orchestrator.db.session import create_engine, create_sessionmaker
from stack_orchestrator.orchestrator.snapshot import StackSnapshot
from stack_orchestrator.services.stack_service import StackOrchestrator
from stack_orchestrator.settings import Settings

OWNER = RequestContext(user_id="alice", tenant_id="tenant-a", role="owner")
VIEWER = RequestContext(user_id="victor", tenant_id="tenant-a", role="viewer")
OTHER_TENANT = RequestContext(user_id="bob", tenant_id="tenant-b", role="owner")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        env="test",
        log_level="WARNING",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'stacks.db'}",
        stack_poll_interval_seconds=0.01,
        rollout_poll_interval_seconds=0.01,
        node_timeout_seconds=30,
        observe_retry_budget=3,
        transport_retry_attempts=3,
        transport_retry_base_delay_seconds=0.0,
        chart_search_url="https://hub.test/api/v1",
        secret_seed="test-seed",
    )


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest_asyncio.fixture
async def session_factory(settings: Settings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_engine(settings)
    await init_db(engine)
    factory = create_sessionmaker(engine)
    await seed_catalog(factory)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    cluster: InMemoryCluster,
    settings: Settings,
) -> AsyncIterator[StackOrchestrator]:
    orch = StackOrchestrator(session_factory=session_factory, cluster=cluster, settings=settings)
    try:
        yield orch
    finally:
        await orch.aclose()


async def settled(orch: StackOrchestrator, stack_id: uuid.UUID, *, timeout: float = 10.0) -> StackSnapshot:
    """Wait for background work on the stack, then return its stored snapshot."""

    await asyncio.wait_for(orch.deployer.wait_idle(stack_id), timeout)
    return await orch.reconciler.snapshot(stack_id)


def statuses(snap: StackSnapshot) -> dict[str, str]:
    return {n.recipe_id: n.status.value for n in snap.nodes}
