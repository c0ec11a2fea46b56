"""
stack_orchestrator.cluster.naming

Deterministic names and ownership labels for cluster resources.

Responsibilities:
- Map a tenant to its namespace.
- Name a service node's resources so re-applies converge on the same objects.
- Build the (tenant, stack, node) ownership labels and the selector used to find them.
"""

from __future__ import annotations

import re
import uuid

MANAGED_BY = "stack-orchestrator"

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_TENANT = "stack-orchestrator/tenant"
LABEL_STACK = "stack-orchestrator/stack"
LABEL_NODE = "stack-orchestrator/node"
LABEL_RECIPE = "stack-orchestrator/recipe"

# Pod template annotation; bumping it rolls the pods of an otherwise unchanged workload.
ANNOTATION_RESTARTED = "stack-orchestrator/restarted-generation"

_INVALID = re.compile(r"[^a-z0-9-]+")


def _dns_label(raw: str, *, max_len: int = 63) -> str:
    cleaned = _INVALID.sub("-", raw.lower()).strip("-")
    return cleaned[:max_len].rstrip("-")


def tenant_namespace(prefix: str, tenant_id: str) -> str:
    body = _dns_label(tenant_id, max_len=63 - len(prefix)) or "default"
    return f"{prefix}{body}"


def resource_name(recipe_id: str, stack_id: uuid.UUID | str) -> str:
    suffix = str(stack_id).replace("-", "")[:8]
    return f"{recipe_id[:54].rstrip('-')}-{suffix}"


def service_host(name: str, namespace: str) -> str:
    return f"{name}.{namespace}.svc.cluster.local"


def ownership_labels(
    *,
    tenant_id: str,
    stack_id: uuid.UUID | str,
    node_id: uuid.UUID | str,
    recipe_id: str,
) -> dict[str, str]:
    return {
        LABEL_MANAGED_BY: MANAGED_BY,
        LABEL_TENANT: _dns_label(tenant_id) or "default",
        LABEL_STACK: str(stack_id),
        LABEL_NODE: str(node_id),
        LABEL_RECIPE: recipe_id,
    }


def node_selector(labels: dict[str, str]) -> str:
    # The node label alone is unique; managed-by guards against foreign objects.
    return f"{LABEL_MANAGED_BY}={MANAGED_BY},{LABEL_NODE}={labels[LABEL_NODE]}"
