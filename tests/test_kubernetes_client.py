"""
tests.test_kubernetes_client

Kubernetes REST backend against an `httpx.MockTransport` API server.
"""

from __future__ import annotations

import json
import uuid

import httpx
import pytest

from stack_orchestrator.cluster.client import ObservedPhase
from stack_orchestrator.cluster.kubernetes import KubernetesClusterApi, fold_observation, pod_status
from stack_orchestrator.cluster.naming import LABEL_NODE, ownership_labels
from stack_orchestrator.errors import ClusterUnavailable
from stack_orchestrator.settings import Settings

NS = "stack-tenant-a"
LABELS = ownership_labels(
    tenant_id="tenant-a", stack_id=uuid.uuid4(), node_id=uuid.uuid4(), recipe_id="redis"
)


def _api(handler) -> KubernetesClusterApi:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://k8s.test")
    return KubernetesClusterApi(settings=Settings(env="test"), http=http)


def _deployment(*, replicas: int, ready: int, generation: int = 1, observed: int = 1) -> dict:
    return {
        "metadata": {"name": "redis-abc", "generation": generation},
        "spec": {"replicas": replicas},
        "status": {
            "replicas": ready,
            "readyReplicas": ready,
            "updatedReplicas": ready,
            "observedGeneration": observed,
        },
    }


def _pod(*, waiting: str | None = None, restarts: int = 0) -> dict:
    state = {"waiting": {"reason": waiting, "message": "back-off 5m0s"}} if waiting else {"running": {}}
    return {
        "metadata": {"name": "redis-abc-0", "creationTimestamp": "2026-01-01T00:00:00Z"},
        "spec": {"containers": [{"name": "redis"}]},
        "status": {
            "phase": "Running",
            "containerStatuses": [
                {"ready": waiting is None, "restartCount": restarts, "state": state}
            ],
        },
    }


def _lists(deployments: list[dict], pods: list[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/deployments"):
            return httpx.Response(200, json={"items": deployments})
        if path.endswith("/pods"):
            return httpx.Response(200, json={"items": pods})
        return httpx.Response(200, json={"items": []})

    return handler


@pytest.mark.asyncio
async def test_apply_uses_server_side_apply_per_resource() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    api = _api(handler)
    await api.apply(
        namespace=NS,
        resources=[
            {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "redis-abc"}},
            {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "redis-abc"}},
        ],
        labels=LABELS,
    )

    assert [r.url.path for r in seen] == [
        f"/api/v1/namespaces/{NS}",
        f"/apis/apps/v1/namespaces/{NS}/deployments/redis-abc",
        f"/api/v1/namespaces/{NS}/services/redis-abc",
    ]
    assert all(r.method == "PATCH" for r in seen)
    assert all(r.headers["content-type"] == "application/apply-patch+yaml" for r in seen)
    assert seen[1].url.params["fieldManager"] == "stack-orchestrator"
    assert json.loads(seen[1].content)["kind"] == "Deployment"


@pytest.mark.asyncio
async def test_delete_removes_only_labelled_objects() -> None:
    deleted: list[str] = []
    selectors: set[str] = set()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            deleted.append(request.url.path)
            # Already gone is fine.
            return httpx.Response(404 if "services" in request.url.path else 200, json={})
        selectors.add(request.url.params.get("labelSelector", ""))
        if request.url.path.endswith("/deployments") or request.url.path.endswith("/services"):
            return httpx.Response(200, json={"items": [{"metadata": {"name": "redis-abc"}}]})
        return httpx.Response(200, json={"items": []})

    await _api(handler).delete(namespace=NS, labels=LABELS)

    assert deleted == [
        f"/apis/apps/v1/namespaces/{NS}/deployments/redis-abc",
        f"/api/v1/namespaces/{NS}/services/redis-abc",
    ]
    assert len(selectors) == 1
    assert f"{LABEL_NODE}={LABELS[LABEL_NODE]}" in selectors.pop()


@pytest.mark.asyncio
async def test_observe_ready_workload() -> None:
    api = _api(_lists([_deployment(replicas=1, ready=1)], [_pod(restarts=2)]))
    obs = await api.observe(namespace=NS, labels=LABELS)

    assert obs.phase == ObservedPhase.ready
    assert obs.raw["pods"][0]["restarts"] == 2


@pytest.mark.asyncio
async def test_observe_rollout_in_progress() -> None:
    api = _api(_lists([_deployment(replicas=2, ready=1, generation=2, observed=1)], [_pod()]))
    obs = await api.observe(namespace=NS, labels=LABELS)
    assert obs.phase == ObservedPhase.deploying


@pytest.mark.asyncio
async def test_observe_crash_loop_is_failed() -> None:
    api = _api(_lists([_deployment(replicas=1, ready=0)], [_pod(waiting="CrashLoopBackOff")]))
    obs = await api.observe(namespace=NS, labels=LABELS)

    assert obs.phase == ObservedPhase.failed
    assert obs.detail == "redis-abc-0: CrashLoopBackOff (back-off 5m0s)"


@pytest.mark.asyncio
async def test_observe_nothing_is_absent() -> None:
    obs = await _api(_lists([], [])).observe(namespace=NS, labels=LABELS)
    assert obs.phase == ObservedPhase.absent


def test_scaled_to_zero_is_ready() -> None:
    obs = fold_observation(
        [
            {
                "kind": "Deployment",
                "name": "x",
                "desired": 0,
                "ready": 0,
                "is_ready": True,
                "failed_reason": None,
            }
        ],
        [],
    )
    assert obs.phase == ObservedPhase.ready


def test_pod_status_prefers_container_state() -> None:
    status = pod_status(_pod(waiting="ImagePullBackOff", restarts=1))
    assert status["phase"] == "ImagePullBackOff"
    assert status["ready"] is False
    assert status["restarts"] == 1


@pytest.mark.asyncio
async def test_read_logs_from_newest_pod() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/log"):
            assert request.url.params["tailLines"] == "50"
            assert request.url.params["container"] == "redis"
            return httpx.Response(200, text="Ready to accept connections\n")
        return httpx.Response(200, json={"items": [_pod()]})

    text = await _api(handler).read_logs(namespace=NS, labels=LABELS, tail_lines=50)
    assert text == "Ready to accept connections\n"


@pytest.mark.asyncio
async def test_server_errors_are_retryable_and_rejections_are_not() -> None:
    def unavailable(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"message": "etcdserver: leader changed"})

    def invalid(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "spec.replicas: Invalid value"})

    with pytest.raises(ClusterUnavailable) as exc:
        await _api(unavailable).list_nodes()
    assert exc.value.retryable is True
    assert "leader changed" in exc.value.message

    with pytest.raises(ClusterUnavailable) as exc:
        await _api(invalid).apply(
            namespace=NS,
            resources=[{"apiVersion": "v1", "kind": "Service", "metadata": {"name": "x"}}],
            labels=LABELS,
        )
    assert exc.value.retryable is False


@pytest.mark.asyncio
async def test_transport_errors_become_cluster_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ClusterUnavailable) as exc:
        await _api(handler).list_pods()
    assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_missing_metrics_server_means_no_usage() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "the server could not find the requested resource"})

    assert await _api(handler).node_metrics() is None
