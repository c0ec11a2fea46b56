"""
tests.test_deployer

Rollout behaviour against the in-memory cluster: dependency ordering, idempotent
redeploys, reverse-order teardown, per-stack serialization and failure handling.
"""

from __future__ import annotations

import asyncio

import pytest

from stack_orchestrator.cluster.naming import (
    ANNOTATION_RESTARTED,
    resource_name,
    service_host,
    tenant_namespace,
)
from stack_orchestrator.db.models import NodeStatus, StackTarget
from stack_orchestrator.errors import (
    DeployConflict,
    Forbidden,
    InvalidRecipeId,
    RecipeNotFound,
    ServiceNotFound,
    StackNotFound,
)
from stack_orchestrator.services import deployer as deployer_module
from tests.conftest import OTHER_TENANT, OWNER, VIEWER, settled, statuses


def _by_kind(resources: list[dict], kind: str) -> dict:
    return next(r for r in resources if r["kind"] == kind)


def _env(workload: dict) -> dict[str, object]:
    container = workload["spec"]["template"]["spec"]["containers"][0]
    return {e["name"]: e.get("value") for e in container["env"]}


@pytest.mark.asyncio
async def test_n8n_waits_for_postgres_to_run(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    assert {n.recipe_id for n in snap.nodes} == {"postgres", "n8n"}
    assert len(snap.edges) == 1

    final = await settled(orchestrator, snap.id)
    assert statuses(final) == {"postgres": "RUNNING", "n8n": "RUNNING"}
    assert final.status == "RUNNING"
    assert not final.transitional
    assert cluster.ops(str(snap.id)) == [("apply", "postgres"), ("apply", "n8n")]

    # postgres reached RUNNING before the n8n create was issued.
    events = await orchestrator.audit_trail(OWNER, snap.id)
    transitions = [
        (e["details"]["recipe_id"], e["details"]["to"])
        for e in events
        if e["event_type"] == "NODE_STATUS"
    ]
    assert transitions.index(("postgres", "RUNNING")) < transitions.index(("n8n", "DEPLOYING"))
    assert events[0]["event_type"] == "STACK_DEPLOY_REQUESTED"


@pytest.mark.asyncio
async def test_dependency_connection_info_is_rendered(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    final = await settled(orchestrator, snap.id)
    postgres = final.node_for_recipe("postgres")
    n8n = final.node_for_recipe("n8n")
    assert postgres is not None and n8n is not None

    pg_resources = cluster.resources_for(str(postgres.id))
    n8n_resources = cluster.resources_for(str(n8n.id))
    namespace = tenant_namespace("stack-", OWNER.tenant_id)

    env = _env(_by_kind(n8n_resources, "Deployment"))
    assert env["DB_POSTGRESDB_HOST"] == service_host(resource_name("postgres", snap.id), namespace)
    assert env["DB_POSTGRESDB_PORT"] == "5432"
    assert env["DB_POSTGRESDB_DATABASE"] == "app"
    # Both sides derive the same credential without storing it.
    pg_secret = _by_kind(pg_resources, "Secret")["stringData"]["POSTGRES_PASSWORD"]
    n8n_secret = _by_kind(n8n_resources, "Secret")["stringData"]["DB_POSTGRESDB_PASSWORD"]
    assert pg_secret and pg_secret == n8n_secret
    assert all(r["metadata"]["namespace"] == namespace for r in n8n_resources)


@pytest.mark.asyncio
async def test_root_config_overrides_apply_to_root_only(orchestrator) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n", {"replicas": 2})
    final = await settled(orchestrator, snap.id)
    assert final.node_for_recipe("n8n").config["replicas"] == 2
    assert final.node_for_recipe("postgres").config["replicas"] == 1


@pytest.mark.asyncio
async def test_redeploy_of_running_stack_is_a_noop(orchestrator, cluster) -> None:
    first = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    before = await settled(orchestrator, first.id)
    mutations = len(cluster.mutations)

    again = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    after = await settled(orchestrator, again.id)

    assert again.id == first.id
    assert len(cluster.mutations) == mutations
    assert after.generation == before.generation
    assert statuses(after) == {"postgres": "RUNNING", "n8n": "RUNNING"}
    assert not orchestrator.locks.is_busy(first.id)


@pytest.mark.asyncio
async def test_remove_tears_down_in_reverse_order(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    await settled(orchestrator, snap.id)

    await orchestrator.deployer.remove_stack(OWNER, snap.id)
    final = await settled(orchestrator, snap.id)

    assert cluster.ops(str(snap.id)) == [
        ("apply", "postgres"),
        ("apply", "n8n"),
        ("delete", "n8n"),
        ("delete", "postgres"),
    ]
    assert statuses(final) == {"postgres": "DELETED", "n8n": "DELETED"}
    assert final.target == StackTarget.deleted
    assert final.status == "DELETED"
    assert not any(cluster.has_workload(str(n.id)) for n in final.nodes)
    assert await orchestrator.list_stacks(OWNER) == []

    # Removing an already removed stack issues nothing.
    await orchestrator.deployer.remove_stack(OWNER, snap.id)
    await settled(orchestrator, snap.id)
    assert len(cluster.ops(str(snap.id))) == 4


@pytest.mark.asyncio
async def test_teardown_keeps_dependency_of_a_dependent_it_could_not_stop(
    orchestrator, cluster, monkeypatch
) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    await settled(orchestrator, snap.id)

    real_transition = deployer_module.transition_node

    async def losing_transition(*args, **kwargs):
        # The reconciler keeps winning the race for n8n's row.
        if kwargs["node"].recipe_id == "n8n" and kwargs["target"] == NodeStatus.deleting:
            return False
        return await real_transition(*args, **kwargs)

    monkeypatch.setattr(deployer_module, "transition_node", losing_transition)
    await orchestrator.deployer.remove_stack(OWNER, snap.id)
    final = await settled(orchestrator, snap.id)

    assert ("delete", "postgres") not in cluster.ops(str(snap.id))
    assert cluster.has_workload(str(final.node_for_recipe("postgres").id))
    assert statuses(final) == {"postgres": "RUNNING", "n8n": "RUNNING"}


@pytest.mark.asyncio
async def test_deploy_after_remove_creates_a_fresh_stack(orchestrator) -> None:
    first = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    await settled(orchestrator, first.id)
    await orchestrator.deployer.remove_stack(OWNER, first.id)
    await settled(orchestrator, first.id)

    second = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    final = await settled(orchestrator, second.id)
    assert second.id != first.id
    assert statuses(final) == {"uptime-kuma": "RUNNING"}


@pytest.mark.asyncio
async def test_concurrent_mutations_are_serialized_per_stack(orchestrator, cluster) -> None:
    cluster.mutation_delay = 0.2
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")

    with pytest.raises(DeployConflict):
        await orchestrator.deployer.deploy_stack(OWNER, "n8n", {"replicas": 3})

    # Removal supersedes the in-flight rollout and queues behind it.
    await orchestrator.deployer.remove_stack(OWNER, snap.id)
    final = await settled(orchestrator, snap.id, timeout=20)

    assert cluster.max_in_flight[str(snap.id)] == 1
    ops = cluster.ops(str(snap.id))
    first_delete = next(i for i, (op, _) in enumerate(ops) if op == "delete")
    assert all(op == "delete" for op, _ in ops[first_delete:])
    assert statuses(final) == {"postgres": "DELETED", "n8n": "DELETED"}
    assert not any(cluster.has_workload(str(n.id)) for n in final.nodes)


@pytest.mark.asyncio
async def test_identical_redeploy_during_rollout_is_a_noop(orchestrator, cluster) -> None:
    cluster.mutation_delay = 0.2
    first = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    await asyncio.sleep(0.05)

    again = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    assert again.id == first.id
    assert again.generation == first.generation

    final = await settled(orchestrator, first.id, timeout=20)
    assert statuses(final) == {"postgres": "RUNNING", "n8n": "RUNNING"}
    assert cluster.ops(str(first.id)) == [("apply", "postgres"), ("apply", "n8n")]
    assert not orchestrator.locks.is_busy(first.id)


@pytest.mark.asyncio
async def test_tenants_deploy_independently(orchestrator, cluster) -> None:
    other = OTHER_TENANT
    a, b = await asyncio.gather(
        orchestrator.deployer.deploy_stack(OWNER, "n8n"),
        orchestrator.deployer.deploy_stack(other, "n8n"),
    )
    assert a.id != b.id
    assert statuses(await settled(orchestrator, a.id))["n8n"] == "RUNNING"
    assert statuses(await settled(orchestrator, b.id))["n8n"] == "RUNNING"

    with pytest.raises(StackNotFound):
        await orchestrator.get_stack(other, a.id)
    with pytest.raises(StackNotFound):
        await orchestrator.deployer.remove_stack(other, a.id)


@pytest.mark.asyncio
async def test_update_rolls_config_through_deploying(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    node = (await settled(orchestrator, snap.id)).node_for_recipe("uptime-kuma")

    await orchestrator.deployer.update_service(OWNER, node.id, {"image": "louislam/uptime-kuma:2"})
    final = await settled(orchestrator, snap.id)
    updated = final.node(node.id)

    assert updated.status.value == "RUNNING"
    assert updated.config["image"] == "louislam/uptime-kuma:2"
    assert updated.config["port"] == 3001
    assert cluster.ops(str(snap.id)) == [("apply", "uptime-kuma"), ("apply", "uptime-kuma")]
    workload = _by_kind(cluster.resources_for(str(node.id)), "Deployment")
    assert workload["spec"]["template"]["spec"]["containers"][0]["image"] == "louislam/uptime-kuma:2"

    events = await orchestrator.audit_trail(OWNER, snap.id)
    reasons = [e["details"].get("reason") for e in events if e["event_type"] == "NODE_STATUS"]
    assert "update_issued" in reasons

    # Same config again changes nothing.
    await orchestrator.deployer.update_service(OWNER, node.id, {"image": "louislam/uptime-kuma:2"})
    await settled(orchestrator, snap.id)
    assert len(cluster.ops(str(snap.id))) == 2


@pytest.mark.asyncio
async def test_scale_to_zero_settles_running(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    node = (await settled(orchestrator, snap.id)).node_for_recipe("uptime-kuma")

    await orchestrator.deployer.update_service(OWNER, node.id, {"replicas": 0})
    final = await settled(orchestrator, snap.id)

    assert final.node(node.id).status.value == "RUNNING"
    assert _by_kind(cluster.resources_for(str(node.id)), "Deployment")["spec"]["replicas"] == 0


@pytest.mark.asyncio
async def test_update_while_rollout_in_flight_conflicts(orchestrator, cluster) -> None:
    cluster.mutation_delay = 0.2
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    node = snap.node_for_recipe("uptime-kuma")

    with pytest.raises(DeployConflict):
        await orchestrator.deployer.update_service(OWNER, node.id, {"replicas": 2})
    await settled(orchestrator, snap.id)


@pytest.mark.asyncio
async def test_restart_reapplies_unchanged_config(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    node = (await settled(orchestrator, snap.id)).node_for_recipe("uptime-kuma")
    first = _by_kind(cluster.resources_for(str(node.id)), "Deployment")
    assert ANNOTATION_RESTARTED not in (first["spec"]["template"]["metadata"].get("annotations") or {})

    accepted = await orchestrator.deployer.restart_service(OWNER, node.id)
    final = await settled(orchestrator, snap.id)
    restarted = final.node(node.id)

    assert restarted.status.value == "RUNNING"
    assert restarted.config == node.config
    assert restarted.config_hash == node.config_hash
    assert cluster.ops(str(snap.id)) == [("apply", "uptime-kuma"), ("apply", "uptime-kuma")]
    workload = _by_kind(cluster.resources_for(str(node.id)), "Deployment")
    annotations = workload["spec"]["template"]["metadata"]["annotations"]
    assert annotations[ANNOTATION_RESTARTED] == str(final.generation)
    assert final.generation == accepted.generation

    events = await orchestrator.audit_trail(OWNER, snap.id)
    assert "SERVICE_RESTART_REQUESTED" in [e["event_type"] for e in events]
    reasons = [e["details"].get("reason") for e in events if e["event_type"] == "NODE_STATUS"]
    assert "restart_issued" in reasons


@pytest.mark.asyncio
async def test_restart_retries_a_failed_node(orchestrator, cluster) -> None:
    cluster.reject_apply["uptime-kuma"] = "quota exceeded"
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    node = (await settled(orchestrator, snap.id)).node_for_recipe("uptime-kuma")
    assert node.status.value == "FAILED"

    del cluster.reject_apply["uptime-kuma"]
    await orchestrator.deployer.restart_service(OWNER, node.id)
    final = await settled(orchestrator, snap.id)
    assert statuses(final) == {"uptime-kuma": "RUNNING"}
    assert final.node(node.id).error is None


@pytest.mark.asyncio
async def test_restart_guards(orchestrator, cluster) -> None:
    cluster.mutation_delay = 0.2
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    node = snap.node_for_recipe("uptime-kuma")

    with pytest.raises(DeployConflict):
        await orchestrator.deployer.restart_service(OWNER, node.id)
    await settled(orchestrator, snap.id)

    with pytest.raises(Forbidden):
        await orchestrator.deployer.restart_service(VIEWER, node.id)
    with pytest.raises(ServiceNotFound):
        await orchestrator.deployer.restart_service(OTHER_TENANT, node.id)
    with pytest.raises(ServiceNotFound):
        await orchestrator.deployer.restart_service(OWNER, "not-a-uuid")


@pytest.mark.asyncio
async def test_connection_info_matches_what_dependents_are_wired_with(orchestrator, cluster) -> None:
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    final = await settled(orchestrator, snap.id)
    postgres = final.node_for_recipe("postgres")

    info = await orchestrator.connection_info(OWNER, postgres.id)
    namespace = tenant_namespace("stack-", OWNER.tenant_id)
    assert info["host"] == service_host(resource_name("postgres", snap.id), namespace)
    assert info["port"] == "5432"

    n8n_resources = cluster.resources_for(str(final.node_for_recipe("n8n").id))
    assert info["host"] == _env(_by_kind(n8n_resources, "Deployment"))["DB_POSTGRESDB_HOST"]
    n8n_secret = _by_kind(n8n_resources, "Secret")["stringData"]["DB_POSTGRESDB_PASSWORD"]
    assert info["secrets"]["password"] == n8n_secret

    viewer_info = await orchestrator.connection_info(VIEWER, postgres.id)
    assert "secrets" not in viewer_info
    assert viewer_info["host"] == info["host"]

    with pytest.raises(ServiceNotFound):
        await orchestrator.connection_info(OTHER_TENANT, postgres.id)


@pytest.mark.asyncio
async def test_rejected_apply_fails_node_and_blocks_dependents(orchestrator, cluster) -> None:
    cluster.reject_apply["postgres"] = "admission webhook denied the request"
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    final = await settled(orchestrator, snap.id)

    postgres = final.node_for_recipe("postgres")
    n8n = final.node_for_recipe("n8n")
    assert postgres.status.value == "FAILED"
    assert postgres.error == "Create failed: admission webhook denied the request"
    assert n8n.status.value == "FAILED"
    assert n8n.error == "Blocked: dependency 'postgres' failed"
    assert final.status == "FAILED"
    assert cluster.mutations == []

    # Fixing the cause and deploying again retries the failed nodes in place.
    del cluster.reject_apply["postgres"]
    again = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    assert again.id == snap.id
    recovered = await settled(orchestrator, snap.id)
    assert statuses(recovered) == {"postgres": "RUNNING", "n8n": "RUNNING"}
    assert recovered.node_for_recipe("n8n").error is None


@pytest.mark.asyncio
async def test_unhealthy_dependency_blocks_dependent(orchestrator, cluster) -> None:
    cluster.failing["postgres"] = "CrashLoopBackOff"
    snap = await orchestrator.deployer.deploy_stack(OWNER, "n8n")
    final = await settled(orchestrator, snap.id)

    assert final.node_for_recipe("postgres").error == "CrashLoopBackOff"
    assert final.node_for_recipe("n8n").status.value == "FAILED"
    assert cluster.ops(str(snap.id)) == [("apply", "postgres")]


@pytest.mark.asyncio
async def test_transient_apply_errors_are_retried(orchestrator, cluster) -> None:
    cluster.apply_errors["uptime-kuma"] = 2
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    final = await settled(orchestrator, snap.id)
    assert statuses(final) == {"uptime-kuma": "RUNNING"}


@pytest.mark.asyncio
async def test_exhausted_apply_retries_fail_the_node(orchestrator, cluster) -> None:
    cluster.apply_errors["uptime-kuma"] = 3
    snap = await orchestrator.deployer.deploy_stack(OWNER, "uptime-kuma")
    final = await settled(orchestrator, snap.id)
    node = final.node_for_recipe("uptime-kuma")
    assert node.status.value == "FAILED"
    assert node.error == "Create failed: apply uptime-kuma: connection reset"


@pytest.mark.asyncio
async def test_unknown_and_invalid_recipes_create_nothing(orchestrator) -> None:
    with pytest.raises(RecipeNotFound):
        await orchestrator.deployer.deploy_stack(OWNER, "ghost-app")
    with pytest.raises(InvalidRecipeId):
        await orchestrator.deployer.deploy_stack(OWNER, "Not_A_Slug")
    assert await orchestrator.list_stacks(OWNER) == []


@pytest.mark.asyncio
async def test_viewer_cannot_mutate(orchestrator) -> None:
    with pytest.raises(Forbidden):
        await orchestrator.deployer.deploy_stack(VIEWER, "redis")

    snap = await orchestrator.deployer.deploy_stack(OWNER, "redis")
    await settled(orchestrator, snap.id)
    with pytest.raises(Forbidden):
        await orchestrator.deployer.remove_stack(VIEWER, snap.id)
    # Viewers still read.
    assert (await orchestrator.get_stack(VIEWER, snap.id)).id == snap.id


@pytest.mark.asyncio
async def test_update_of_unknown_or_foreign_service(orchestrator) -> None:
    with pytest.raises(ServiceNotFound):
        await orchestrator.deployer.update_service(OWNER, "not-a-uuid", {"replicas": 2})

    snap = await orchestrator.deployer.deploy_stack(OWNER, "redis")
    node = (await settled(orchestrator, snap.id)).node_for_recipe("redis")
    with pytest.raises(ServiceNotFound):
        await orchestrator.deployer.update_service(OTHER_TENANT, node.id, {"replicas": 2})
