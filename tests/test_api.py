"""
tests.test_api

HTTP surface end to end: app lifespan, bearer auth, stack endpoints, error bodies,
cluster stats, catalog and the agent tool endpoint.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from stack_orchestrator.api.app import create_app
from stack_orchestrator.cluster.memory import InMemoryCluster
from tests.conftest import settled, statuses


def _chart_hub(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"packages": []})


@pytest_asyncio.fixture
async def app(settings, cluster) -> AsyncIterator[FastAPI]:
    # httpx's ASGITransport does not run the lifespan; drive it explicitly.
    app = create_app(settings=settings, cluster=cluster, chart_transport=httpx.MockTransport(_chart_hub))
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _token(client: httpx.AsyncClient, *, tenant: str = "tenant-a", role: str = "owner") -> dict[str, str]:
    r = await client.post(
        "/v1/dev/token", json={"user_id": f"{role}@{tenant}", "tenant_id": tenant, "role": role}
    )
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.mark.asyncio
async def test_health_endpoints(client) -> None:
    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"

    r = await client.get("/readyz")
    assert r.status_code == 200
    assert r.json() == {"status": "ready", "cluster_backend": "memory"}


@pytest.mark.asyncio
async def test_requests_without_a_valid_token_are_rejected(client) -> None:
    r = await client.get("/stack")
    assert r.status_code == 401
    assert r.headers["www-authenticate"] == "Bearer"
    assert r.json()["error"] == "Unauthorized"

    r = await client.get("/stack", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_viewer_cannot_deploy(client) -> None:
    headers = await _token(client, role="viewer")
    r = await client.post("/stack", json={"recipe_id": "redis"}, headers=headers)
    assert r.status_code == 403
    assert r.json()["error"] == "Forbidden"


@pytest.mark.asyncio
async def test_deploy_poll_and_remove(app, client) -> None:
    headers = await _token(client)
    orch = app.state.orchestrator

    r = await client.post("/stack", json={"recipe_id": "n8n"}, headers=headers)
    assert r.status_code == 202
    accepted = r.json()
    stack_id = accepted["id"]
    assert {n["recipe_id"] for n in accepted["nodes"]} == {"postgres", "n8n"}

    r = await client.get("/stack", params={"stack_id": stack_id}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    if body["transitional"]:
        assert body["poll_interval_seconds"] == orch.settings.stack_poll_interval_seconds

    await settled(orch, orch.parse_stack_id(stack_id))
    r = await client.get("/stack", params={"stack_id": stack_id}, headers=headers)
    body = r.json()
    assert body["transitional"] is False
    assert body["poll_interval_seconds"] is None
    assert {n["recipe_id"]: n["status"] for n in body["nodes"]} == {
        "postgres": "RUNNING",
        "n8n": "RUNNING",
    }
    assert len(body["edges"]) == 1

    r = await client.get("/stack", headers=headers)
    assert [s["id"] for s in r.json()["stacks"]] == [stack_id]

    r = await client.delete(f"/stack/{stack_id}", headers=headers)
    assert r.status_code == 202
    final = await settled(orch, orch.parse_stack_id(stack_id))
    assert statuses(final) == {"postgres": "DELETED", "n8n": "DELETED"}

    r = await client.get(f"/stack/{stack_id}/audit", headers=headers)
    assert r.status_code == 200
    kinds = [e["event_type"] for e in r.json()["events"]]
    assert "NODE_STATUS" in kinds


@pytest.mark.asyncio
async def test_update_service(app, client, cluster) -> None:
    headers = await _token(client)
    orch = app.state.orchestrator
    r = await client.post("/stack", json={"recipe_id": "redis"}, headers=headers)
    snap = await settled(orch, orch.parse_stack_id(r.json()["id"]))
    node_id = str(snap.node_for_recipe("redis").id)

    r = await client.patch(f"/stack/nodes/{node_id}", json={"config": {"replicas": 2}}, headers=headers)
    assert r.status_code == 202

    final = await settled(orch, snap.id)
    assert final.node_for_recipe("redis").config["replicas"] == 2
    assert statuses(final) == {"redis": "RUNNING"}


@pytest.mark.asyncio
async def test_other_tenants_see_nothing(app, client) -> None:
    owner = await _token(client)
    stranger = await _token(client, tenant="tenant-b")
    orch = app.state.orchestrator

    r = await client.post("/stack", json={"recipe_id": "redis"}, headers=owner)
    stack_id = r.json()["id"]
    await settled(orch, orch.parse_stack_id(stack_id))

    r = await client.get("/stack", params={"stack_id": stack_id}, headers=stranger)
    assert r.status_code == 404
    assert r.json()["error"] == "StackNotFound"

    r = await client.delete(f"/stack/{stack_id}", headers=stranger)
    assert r.status_code == 404

    r = await client.get("/stack", headers=stranger)
    assert r.json()["stacks"] == []


@pytest.mark.asyncio
async def test_error_bodies(app, client) -> None:
    headers = await _token(client)
    orch = app.state.orchestrator

    r = await client.post("/stack", json={"recipe_id": "does-not-exist"}, headers=headers)
    assert r.status_code == 404
    assert r.json()["error"] == "RecipeNotFound"
    assert "does-not-exist" in r.json()["detail"]

    r = await client.post("/stack", json={"recipe_id": "Not A Slug!"}, headers=headers)
    assert r.status_code == 422
    assert r.json()["code"] == "INVALID_RECIPE_ID"

    r = await client.post("/stack", json={"recipe_id": "redis"}, headers=headers)
    stack_id = r.json()["id"]
    node_id = r.json()["nodes"][0]["id"]
    # The first rollout is still running.
    r = await client.patch(f"/stack/nodes/{node_id}", json={"config": {"replicas": 2}}, headers=headers)
    if r.status_code == 409:
        assert r.json()["error"] == "DeployConflict"
    else:
        assert r.status_code == 202
    await settled(orch, orch.parse_stack_id(stack_id))

    r = await client.get("/stack", params={"stack_id": "not-a-uuid"}, headers=headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_watch_streams_ndjson_until_stable(app, client) -> None:
    headers = await _token(client)
    r = await client.post("/stack", json={"recipe_id": "n8n"}, headers=headers)
    stack_id = r.json()["id"]

    r = await client.get(f"/stack/{stack_id}/watch", headers=headers)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/x-ndjson")
    frames = [json.loads(line) for line in r.text.splitlines() if line]
    assert frames
    assert frames[-1]["transitional"] is False
    assert frames[-1]["status"] == "RUNNING"
    await settled(app.state.orchestrator, app.state.orchestrator.parse_stack_id(stack_id))


@pytest.mark.asyncio
async def test_cluster_stats(client, cluster) -> None:
    headers = await _token(client)
    cluster.nodes = [
        {
            "metadata": {"name": "node-1"},
            "status": {
                "capacity": {"cpu": "4", "memory": "8Gi"},
                "allocatable": {"cpu": "4", "memory": "8Gi"},
                "conditions": [{"type": "Ready", "status": "True"}],
            },
        }
    ]
    r = await client.get("/cluster/stats", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["node_count"] == 1
    assert body["capacity"]["cpu"] == 4.0

    cluster.stats_error = "connection refused"
    r = await client.get("/cluster/stats", headers=headers)
    assert r.status_code == 500
    assert r.json()["error"] == "ClusterUnavailable"


@pytest.mark.asyncio
async def test_catalog_endpoints(client) -> None:
    headers = await _token(client, role="viewer")

    r = await client.get("/catalog", params={"search": "workflow"}, headers=headers)
    assert r.status_code == 200
    assert [rec["slug"] for rec in r.json()["recipes"]] == ["n8n"]

    r = await client.get("/catalog", params={"category": "database"}, headers=headers)
    assert [rec["slug"] for rec in r.json()["recipes"]] == ["postgres"]

    r = await client.get("/catalog/n8n", headers=headers)
    assert r.status_code == 200
    assert r.json()["dependencies"] == ["postgres"]

    r = await client.get("/catalog/grafana", headers=headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_agent_endpoints(app, client) -> None:
    headers = await _token(client)

    r = await client.get("/agent/tools", headers=headers)
    assert r.status_code == 200
    names = {t["name"] for t in r.json()["tools"]}
    assert {"deploy_stack", "remove_service", "confirm_action"} <= names

    r = await client.post("/agent/tools/call", json={"tool": "deploy_stack", "recipe_id": "redis"}, headers=headers)
    assert r.status_code == 200
    stack_id = r.json()["data"]["stack"]["stack_id"]
    orch = app.state.orchestrator
    await settled(orch, orch.parse_stack_id(stack_id))

    r = await client.post("/agent/tools/call", json={"tool": "remove_service", "stack_id": stack_id}, headers=headers)
    assert r.status_code == 200
    assert r.json()["status"] == "confirmation_required"
    action_id = r.json()["action_id"]

    r = await client.post(
        "/agent/tools/call",
        json={"tool": "confirm_action", "action_id": action_id, "confirm": True},
        headers=headers,
    )
    assert r.json()["status"] == "ok"
    final = await settled(orch, orch.parse_stack_id(stack_id))
    assert statuses(final) == {"redis": "DELETED"}

    # Failures are part of the envelope, not HTTP errors.
    r = await client.post("/agent/tools/call", json={"tool": "deploy_stack", "recipe_id": "grafana"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["error_code"] == "RECIPE_NOT_FOUND"

    r = await client.post("/agent/tools/call", json={"tool": "nope"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_dev_token_is_disabled_in_prod(settings) -> None:
    app = create_app(
        settings=settings.model_copy(update={"env": "prod"}),
        cluster=InMemoryCluster(),
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        r = await c.post("/v1/dev/token", json={"user_id": "u", "tenant_id": "t"})
    assert r.status_code == 404
    assert r.json()["error"] == "HTTPException"


@pytest.mark.asyncio
async def test_restart_and_connection_routes(app, client, cluster) -> None:
    headers = await _token(client)
    viewer = await _token(client, role="viewer")
    orch = app.state.orchestrator
    r = await client.post("/stack", json={"recipe_id": "redis"}, headers=headers)
    snap = await settled(orch, orch.parse_stack_id(r.json()["id"]))
    node_id = str(snap.node_for_recipe("redis").id)

    r = await client.post(f"/stack/nodes/{node_id}/restart", headers=viewer)
    assert r.status_code == 403

    r = await client.post(f"/stack/nodes/{node_id}/restart", headers=headers)
    assert r.status_code == 202
    final = await settled(orch, snap.id)
    assert statuses(final) == {"redis": "RUNNING"}
    assert cluster.ops(str(snap.id)) == [("apply", "redis"), ("apply", "redis")]

    r = await client.get(f"/stack/nodes/{node_id}/connection", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["recipe_id"] == "redis"
    assert body["port"] == "6379"
    assert set(body["secrets"]) == {"password"}

    r = await client.get(f"/stack/nodes/{node_id}/connection", headers=viewer)
    assert r.status_code == 200
    assert "secrets" not in r.json()

    r = await client.get("/stack/nodes/not-a-uuid/connection", headers=headers)
    assert r.status_code == 404
    assert r.json()["error"] == "ServiceNotFound"
