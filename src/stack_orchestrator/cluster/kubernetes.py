"""
stack_orchestrator.cluster.kubernetes

Kubernetes REST backend for `ClusterApi` (httpx).

Responsibilities:
- Server-side apply of rendered resources (idempotent, label-tagged).
- Label-selector teardown of everything a node owns.
- Observe workloads and pods and fold them into one `Observation`.
- Read pod logs and the node/pod/metrics lists used for cluster stats.
- Map transport and API errors onto `ClusterUnavailable`.
"""

from __future__ import annotations

import json
import ssl
from typing import Any

import httpx

from stack_orchestrator.cluster.client import Observation, ObservedPhase
from stack_orchestrator.cluster.naming import LABEL_MANAGED_BY, MANAGED_BY, node_selector
from stack_orchestrator.errors import ClusterUnavailable
from stack_orchestrator.observability.logging import get_logger
from stack_orchestrator.settings import Settings

log = get_logger(__name__)

FIELD_MANAGER = "stack-orchestrator"
APPLY_CONTENT_TYPE = "application/apply-patch+yaml"

_PLURALS = {
    "Deployment": "deployments",
    "StatefulSet": "statefulsets",
    "DaemonSet": "daemonsets",
    "Job": "jobs",
    "Service": "services",
    "Secret": "secrets",
    "ConfigMap": "configmaps",
    "PersistentVolumeClaim": "persistentvolumeclaims",
    "Ingress": "ingresses",
    "ServiceAccount": "serviceaccounts",
}

# Everything a recipe may create, workloads first so pods stop before their config goes.
_OWNED_COLLECTIONS = (
    ("apps/v1", "deployments"),
    ("apps/v1", "statefulsets"),
    ("apps/v1", "daemonsets"),
    ("batch/v1", "jobs"),
    ("networking.k8s.io/v1", "ingresses"),
    ("v1", "services"),
    ("v1", "configmaps"),
    ("v1", "secrets"),
)

_WORKLOAD_COLLECTIONS = (("apps/v1", "deployments"), ("apps/v1", "statefulsets"))

# Container states that will not resolve without a change to the manifest or image.
FAILED_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ImagePullBackOff",
        "ErrImagePull",
        "InvalidImageName",
        "CreateContainerConfigError",
        "CreateContainerError",
        "RunContainerError",
    }
)

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def _collection_path(api_version: str, plural: str, namespace: str | None) -> str:
    prefix = f"/apis/{api_version}" if "/" in api_version else f"/api/{api_version}"
    if namespace is None:
        return f"{prefix}/{plural}"
    return f"{prefix}/namespaces/{namespace}/{plural}"


def pod_status(pod: dict[str, Any]) -> dict[str, Any]:
    """
    Pod phase refined by container state (CrashLoopBackOff beats "Running").
    """

    statuses = (pod.get("status") or {}).get("containerStatuses") or []
    phase = (pod.get("status") or {}).get("phase") or "Unknown"
    message = None
    for cs in statuses:
        state = cs.get("state") or {}
        waiting = state.get("waiting") or {}
        terminated = state.get("terminated") or {}
        if waiting.get("reason"):
            phase, message = waiting["reason"], waiting.get("message")
            break
        if terminated.get("reason"):
            phase, message = terminated["reason"], terminated.get("message")
            break
    last_terminated = [
        ((cs.get("lastState") or {}).get("terminated") or {}).get("reason") for cs in statuses
    ]
    return {
        "name": (pod.get("metadata") or {}).get("name", "unknown"),
        "phase": phase,
        "message": message,
        "ready": bool(statuses) and all(cs.get("ready") for cs in statuses),
        "restarts": sum(int(cs.get("restartCount") or 0) for cs in statuses),
        "last_terminated": [r for r in last_terminated if r],
    }


def _workload_summary(kind: str, obj: dict[str, Any]) -> dict[str, Any]:
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    meta = obj.get("metadata") or {}
    desired = spec.get("replicas")
    desired = 1 if desired is None else int(desired)
    ready = int(status.get("readyReplicas") or 0)
    updated = int(status.get("updatedReplicas") or 0)
    current = int(status.get("replicas") or 0)
    observed = int(status.get("observedGeneration") or 0)
    settled = observed >= int(meta.get("generation") or 0)

    failed_reason = None
    for cond in status.get("conditions") or []:
        if cond.get("type") == "Progressing" and cond.get("reason") == "ProgressDeadlineExceeded":
            failed_reason = cond.get("message") or "ProgressDeadlineExceeded"

    if desired == 0:
        is_ready = settled and current == 0
    else:
        is_ready = settled and ready >= desired and (kind != "Deployment" or updated >= desired)
    return {
        "kind": kind,
        "name": meta.get("name"),
        "desired": desired,
        "ready": ready,
        "is_ready": is_ready,
        "failed_reason": failed_reason,
    }


def fold_observation(
    workloads: list[dict[str, Any]], pods: list[dict[str, Any]]
) -> Observation:
    """
    Fold workload summaries and pod statuses into one coarse phase.
    """

    raw = {"workloads": workloads, "pods": pods}
    if not workloads and not pods:
        return Observation(phase=ObservedPhase.absent, raw=raw)

    for w in workloads:
        if w.get("failed_reason"):
            return Observation(ObservedPhase.failed, f"{w['name']}: {w['failed_reason']}", raw)
    for p in pods:
        if p["phase"] in FAILED_REASONS or p["phase"] == "Failed":
            detail = f"{p['name']}: {p['phase']}"
            if p.get("message"):
                detail += f" ({p['message']})"
            return Observation(ObservedPhase.failed, detail, raw)

    if workloads and all(w["is_ready"] for w in workloads):
        return Observation(ObservedPhase.ready, raw=raw)
    return Observation(ObservedPhase.deploying, raw=raw)


class KubernetesClusterApi:
    """
    Talks to the Kubernetes API server directly over HTTPS with a bearer token
    (in-cluster service account or an explicit token from settings).
    """

    def __init__(self, *, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=settings.kube_api_url,
            headers=self._auth_headers(settings),
            verify=self._verify(settings),
            timeout=settings.kube_timeout_seconds,
        )

    @staticmethod
    def _auth_headers(settings: Settings) -> dict[str, str]:
        if not settings.kube_token:
            return {}
        return {"Authorization": f"Bearer {settings.kube_token}"}

    @staticmethod
    def _verify(settings: Settings) -> ssl.SSLContext | bool:
        if not settings.kube_verify_tls:
            return False
        if settings.kube_ca_path:
            return ssl.create_default_context(cafile=settings.kube_ca_path)
        return True

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        op: str,
        tolerate: frozenset[int] = frozenset(),
        **kwargs: Any,
    ) -> httpx.Response | None:
        try:
            r = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ClusterUnavailable(f"{op}: {e.__class__.__name__}: {e}") from e
        if r.status_code in tolerate:
            return None
        if r.status_code >= 400:
            try:
                message = r.json().get("message") or r.text
            except ValueError:
                message = r.text
            raise ClusterUnavailable(
                f"{op} failed ({r.status_code}): {message}",
                retryable=r.status_code in _RETRYABLE_STATUS,
            )
        return r

    async def _server_side_apply(self, path: str, body: dict[str, Any], *, op: str) -> None:
        await self._request(
            "PATCH",
            path,
            op=op,
            params={"fieldManager": FIELD_MANAGER, "force": "true"},
            headers={"Content-Type": APPLY_CONTENT_TYPE},
            # JSON is valid YAML, so the apply-patch content type accepts it as-is.
            content=json.dumps(body),
        )

    async def _list(
        self, api_version: str, plural: str, *, namespace: str | None, selector: str | None
    ) -> list[dict[str, Any]]:
        params = {"labelSelector": selector} if selector else None
        r = await self._request(
            "GET",
            _collection_path(api_version, plural, namespace),
            op=f"list {plural}",
            params=params,
            tolerate=frozenset({404}),
        )
        if r is None:
            return []
        return list(r.json().get("items") or [])

    async def apply(
        self, *, namespace: str, resources: list[dict[str, Any]], labels: dict[str, str]
    ) -> None:
        await self._server_side_apply(
            f"/api/v1/namespaces/{namespace}",
            {
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": namespace, "labels": {LABEL_MANAGED_BY: MANAGED_BY}},
            },
            op="apply namespace",
        )
        for resource in resources:
            kind = resource["kind"]
            plural = _PLURALS.get(kind, f"{kind.lower()}s")
            name = resource["metadata"]["name"]
            path = f"{_collection_path(resource['apiVersion'], plural, namespace)}/{name}"
            await self._server_side_apply(path, resource, op=f"apply {kind}/{name}")
        log.debug("k8s.applied", namespace=namespace, count=len(resources))

    async def delete(self, *, namespace: str, labels: dict[str, str]) -> None:
        selector = node_selector(labels)
        for api_version, plural in _OWNED_COLLECTIONS:
            items = await self._list(api_version, plural, namespace=namespace, selector=selector)
            for item in items:
                name = item["metadata"]["name"]
                await self._request(
                    "DELETE",
                    f"{_collection_path(api_version, plural, namespace)}/{name}",
                    op=f"delete {plural}/{name}",
                    params={"propagationPolicy": "Background"},
                    tolerate=frozenset({404}),
                )

    async def _pods(self, namespace: str, labels: dict[str, str]) -> list[dict[str, Any]]:
        return await self._list("v1", "pods", namespace=namespace, selector=node_selector(labels))

    async def observe(self, *, namespace: str, labels: dict[str, str]) -> Observation:
        selector = node_selector(labels)
        workloads: list[dict[str, Any]] = []
        for api_version, plural in _WORKLOAD_COLLECTIONS:
            kind = "Deployment" if plural == "deployments" else "StatefulSet"
            for obj in await self._list(api_version, plural, namespace=namespace, selector=selector):
                workloads.append(_workload_summary(kind, obj))
        pods = [pod_status(p) for p in await self._pods(namespace, labels)]
        return fold_observation(workloads, pods)

    async def read_logs(
        self, *, namespace: str, labels: dict[str, str], tail_lines: int = 100
    ) -> str:
        pods = await self._pods(namespace, labels)
        if not pods:
            return ""
        newest = max(pods, key=lambda p: (p.get("metadata") or {}).get("creationTimestamp") or "")
        name = newest["metadata"]["name"]
        params: dict[str, Any] = {"tailLines": tail_lines}
        containers = (newest.get("spec") or {}).get("containers") or []
        if containers:
            params["container"] = containers[0]["name"]
        r = await self._request(
            "GET",
            f"/api/v1/namespaces/{namespace}/pods/{name}/log",
            op=f"logs {name}",
            params=params,
        )
        return r.text if r is not None else ""

    async def list_nodes(self) -> list[dict[str, Any]]:
        r = await self._request("GET", "/api/v1/nodes", op="list nodes")
        return list(r.json().get("items") or []) if r is not None else []

    async def list_pods(self) -> list[dict[str, Any]]:
        r = await self._request("GET", "/api/v1/pods", op="list pods")
        return list(r.json().get("items") or []) if r is not None else []

    async def node_metrics(self) -> list[dict[str, Any]] | None:
        # metrics-server is optional; a missing API group means "no usage data".
        r = await self._request(
            "GET",
            "/apis/metrics.k8s.io/v1beta1/nodes",
            op="node metrics",
            tolerate=frozenset({404, 503}),
        )
        if r is None:
            return None
        return list(r.json().get("items") or [])


# --- Module Notes -----------------------------------------------------------
# Server-side apply with a fixed field manager makes re-running a rollout after a crash
# converge on the same objects instead of duplicating them.
