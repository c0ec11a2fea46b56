"""
tests.test_reconciler

Status reconciliation: lifecycle mapping, timeouts, observation retry budget, drift,
and the watch stream.
"""

from __future__ import annotations

import pytest

from stack_orchestrator.cluster.client import ObservedPhase
from stack_orchestrator.db.models import NodeStatus
from stack_orchestrator.errors import InvalidTransition, StackNotFound
from stack_orchestrator.orchestrator.lifecycle import check_transition, is_transitional
from stack_orchestrator.services.reconciler import next_status
from stack_orchestrator.services.stack_service import StackOrchestrator
from tests.conftest import OTHER_TENANT, OWNER, settled, statuses


@pytest.mark.parametrize(
    ("current", "phase", "expected"),
    [
        (NodeStatus.deploying, ObservedPhase.ready, NodeStatus.running),
        (NodeStatus.deploying, ObservedPhase.failed, NodeStatus.failed),
        (NodeStatus.deploying, ObservedPhase.deploying, None),
        (NodeStatus.running, ObservedPhase.deploying, NodeStatus.deploying),
        (NodeStatus.running, ObservedPhase.absent, NodeStatus.failed),
        (NodeStatus.running, ObservedPhase.ready, None),
        (NodeStatus.deleting, ObservedPhase.absent, NodeStatus.deleted),
        (NodeStatus.deleting, ObservedPhase.ready, None),
        (NodeStatus.pending, ObservedPhase.ready, None),
        (NodeStatus.deleted, ObservedPhase.ready, None),
    ],
)
def test_next_status(current, phase, expected) -> None:
    assert next_status(current, phase) == expected


def test_transitional_predicate() -> None:
    assert is_transitional([NodeStatus.running, NodeStatus.pending])
    assert is_transitional([NodeStatus.deleting])
    assert not is_transitional([NodeStatus.running, NodeStatus.failed, NodeStatus.deleted])
    assert not is_transitional([])


def test_illegal_transitions_are_rejected() -> None:
    check_transition(NodeStatus.failed, NodeStatus.pending)
    with pytest.raises(InvalidTransition):
        check_transition(NodeStatus.deleted, NodeStatus.pending)
    with pytest.raises(InvalidTransition):
        check_transition(NodeStatus.pending, NodeStatus.running)


@pytest.mark.asyncio
async def test_stuck_deploy_times_out(session_factory, cluster, settings) -> None:
    cluster.stuck.add("uptime-kuma")
    orch = StackOrchestrator(
        session_factory=session_factory,
        cluster=cluster,
        settings=settings.model_copy(update={"node_timeout_seconds": 0.2}),
    )
    try:
        snap = await orch.deployer.deploy_stack(OWNER, "uptime-kuma")
        final = await settled(orch, snap.id)
    finally:
        await orch.aclose()

    node = final.node_for_recipe("uptime-kuma")
    assert node.status == NodeStatus.failed
    assert node.error.startswith("Timed out after")
    assert "DEPLOYING" in node.error


@pytest.mark.asyncio
async def test_stuck_delete_times_out(session_factory, cluster, settings) -> None:
    cluster.stuck_deleting.add("redis")
    orch = StackOrchestrator(
        session_factory=session_factory,
        cluster=cluster,
        settings=settings.model_copy(update={"node_timeout_seconds": 0.3}),
    )
    try:
        snap = await orch.deployer.deploy_stack(OWNER, "redis")
        await settled(orch, snap.id)
        await orch.deployer.remove_stack(OWNER, snap.id)
        final = await settled(orch, snap.id)
    finally:
        await orch.aclose()

    node = final.node_for_recipe("redis")
    assert node.status == NodeStatus.failed
    assert "DELETING" in node.error


@pytest.mark.asyncio
async def test_observe_errors_use_retry_budget(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    await settled(orchestrator, snap.id)

    cluster.observe_errors["uptime-kuma"] = 5
    [node] = await orchestrator.reconciler.reconcile(snap.id)
    assert node.status == NodeStatus.running
    assert node.observe_failures == 1
    assert node.error.startswith("Status check failed (1/3)")

    [node] = await orchestrator.reconciler.reconcile(snap.id)
    assert node.status == NodeStatus.running
    [node] = await orchestrator.reconciler.reconcile(snap.id)
    assert node.status == NodeStatus.failed
    assert node.error.startswith("Cluster status unavailable after 3 attempts")


@pytest.mark.asyncio
async def test_successful_observation_clears_failures(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    await settled(orchestrator, snap.id)

    cluster.observe_errors["uptime-kuma"] = 1
    [node] = await orchestrator.reconciler.reconcile(snap.id)
    assert node.observe_failures == 1
    [node] = await orchestrator.reconciler.reconcile(snap.id)
    assert node.status == NodeStatus.running
    assert node.observe_failures == 0
    assert node.error is None


@pytest.mark.asyncio
async def test_out_of_band_deletion_is_reported(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    node = (await settled(orchestrator, snap.id)).node_for_recipe("uptime-kuma")

    cluster.drop_workload(str(node.id))
    refreshed = await orchestrator.get_stack(OWNER, snap.id)
    assert statuses(refreshed) == {"uptime-kuma": "FAILED"}
    assert refreshed.node(node.id).error == "Resources disappeared from the cluster"


@pytest.mark.asyncio
async def test_watch_streams_until_stable(orchestrator) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    seen = [s async for s in await orchestrator.watch_stack(OWNER, snap.id)]

    assert seen
    assert not seen[-1].transitional
    assert all(s.transitional for s in seen[:-1])
    await settled(orchestrator, snap.id)


@pytest.mark.asyncio
async def test_watch_of_foreign_stack_is_not_found(orchestrator) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "redis")
    with pytest.raises(StackNotFound):
        await orchestrator.watch_stack(OTHER_TENANT, snap.id)
    await settled(orchestrator, snap.id)


@pytest.mark.asyncio
async def test_graph_view_poll_hint(orchestrator) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    busy = orchestrator.graph_view([await orchestrator.reconciler.snapshot(snap.id)])
    assert busy["transitional"] is True
    assert busy["poll_interval_seconds"] == orchestrator.settings.stack_poll_interval_seconds

    stable = orchestrator.graph_view([await settled(orchestrator, snap.id)])
    assert stable["transitional"] is False
    assert stable["poll_interval_seconds"] is None
    assert {n["recipe_id"] for n in stable["nodes"]} == {"postgres", "n8n"}
    assert all(n["stack_id"] == str(snap.id) for n in stable["nodes"])
    [edge] = stable["edges"]
    by_id = {n["id"]: n["recipe_id"] for n in stable["nodes"]}
    assert (by_id[edge["from"]], by_id[edge["to"]]) == ("n8n", "postgres")
