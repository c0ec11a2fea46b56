"""
stack_orchestrator.catalog.template

Manifest template rendering (Jinja2).

Responsibilities:
- Render `{{ ... }}` expressions in a recipe's manifest template against the node's
  render context (name, namespace, config, secrets, dependency info).
- Stamp ownership labels on every rendered resource and its pod template.
- Annotate pod templates (restart markers) after rendering.
- Derive deterministic per-stack credentials from a server-side seed.
"""

from __future__ import annotations

import copy
import hashlib
import hmac
from collections.abc import Iterable, Mapping
from typing import Any

from jinja2 import ChainableUndefined, Environment, nodes

_POD_TEMPLATE_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet", "Job"})

_env = Environment(
    undefined=ChainableUndefined,
    autoescape=False,
    finalize=lambda v: "" if v is None else v,
    keep_trailing_newline=True,
)


def derive_secrets(
    *, seed: str, stack_id: str, recipe_id: str, keys: Iterable[str]
) -> dict[str, str]:
    """
    Same (seed, stack, recipe, key) always yields the same value, so re-applies and
    dependents agree on credentials without storing them.
    """

    out: dict[str, str] = {}
    for key in keys:
        msg = f"{stack_id}:{recipe_id}:{key}".encode()
        out[key] = hmac.new(seed.encode(), msg, hashlib.sha256).hexdigest()[:32]
    return out


def _lone_expression(source: str) -> str | None:
    """Return the expression when `source` is exactly one `{{ expr }}` block."""

    body = _env.parse(source).body
    if len(body) != 1 or not isinstance(body[0], nodes.Output):
        return None
    parts = body[0].nodes
    if len(parts) != 1 or isinstance(parts[0], nodes.TemplateData):
        return None
    stripped = source.strip()
    return stripped[2:-2]


def _render_string(source: str, context: Mapping[str, Any]) -> Any:
    if "{{" not in source:
        return source
    expr = _lone_expression(source)
    if expr is not None:
        # A lone expression keeps the looked-up type (replicas stay ints, secrets stay strings).
        found = _env.compile_expression(expr, undefined_to_none=True)(**context)
        return "" if found is None else copy.deepcopy(found)
    return _env.from_string(source).render(**context)


def _render_value(value: Any, context: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        return _render_string(value, context)
    if isinstance(value, Mapping):
        return {k: _render_value(v, context) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_render_value(v, context) for v in value]
    return value


def _stamp_labels(resource: dict[str, Any], labels: Mapping[str, str]) -> None:
    meta = resource.setdefault("metadata", {})
    meta["labels"] = {**(meta.get("labels") or {}), **labels}
    if resource.get("kind") in _POD_TEMPLATE_KINDS:
        template = resource.setdefault("spec", {}).setdefault("template", {})
        tmeta = template.setdefault("metadata", {})
        tmeta["labels"] = {**(tmeta.get("labels") or {}), **labels}


def annotate_pod_templates(
    resources: Iterable[dict[str, Any]], annotations: Mapping[str, str]
) -> None:
    for resource in resources:
        if resource.get("kind") not in _POD_TEMPLATE_KINDS:
            continue
        tmeta = resource.setdefault("spec", {}).setdefault("template", {}).setdefault("metadata", {})
        tmeta["annotations"] = {**(tmeta.get("annotations") or {}), **annotations}


def render_manifest(
    template: Iterable[Mapping[str, Any]],
    *,
    context: Mapping[str, Any],
    labels: Mapping[str, str],
) -> list[dict[str, Any]]:
    rendered: list[dict[str, Any]] = []
    for resource in template:
        out = _render_value(resource, context)
        if not isinstance(out, dict) or "kind" not in out:
            raise ValueError("manifest template entries must be resource mappings with a kind")
        namespace = context.get("namespace")
        if namespace:
            out.setdefault("metadata", {})["namespace"] = namespace
        _stamp_labels(out, labels)
        rendered.append(out)
    return rendered


# --- Module Notes -----------------------------------------------------------
# Missing values render as empty strings rather than failing the rollout
# (`ChainableUndefined`); a recipe that needs a value declares it in `default_config`.
# Hyphenated dependency slugs need subscript syntax: `{{ deps['uptime-kuma'].host }}`.
