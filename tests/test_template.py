"""
tests.test_template

Manifest rendering and derived credentials.
"""

from __future__ import annotations

import pytest

from stack_orchestrator.catalog.template import derive_secrets, render_manifest

_LABELS = {"stack-orchestrator/node": "n1", "app.kubernetes.io/managed-by": "stack-orchestrator"}


def test_placeholders_render_with_types_preserved() -> None:
    template = [
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "{{ name }}"},
            "spec": {
                "replicas": "{{ config.replicas }}",
                "template": {
                    "spec": {
                        "containers": [
                            {
                                "image": "{{ config.image }}",
                                "env": [
                                    {"name": "DB_HOST", "value": "{{ deps.postgres.host }}"},
                                    {"name": "DSN", "value": "pg://{{ deps.postgres.host }}:{{ deps.postgres.port }}"},
                                    {"name": "UNSET", "value": "{{ config.nope }}"},
                                ],
                            }
                        ]
                    }
                },
            },
        }
    ]
    context = {
        "name": "n8n-abc",
        "namespace": "stack-tenant-a",
        "config": {"replicas": 2, "image": "n8nio/n8n:1"},
        "deps": {"postgres": {"host": "pg.stack-tenant-a.svc.cluster.local", "port": "5432"}},
    }

    [out] = render_manifest(template, context=context, labels=_LABELS)

    assert out["metadata"]["name"] == "n8n-abc"
    assert out["metadata"]["namespace"] == "stack-tenant-a"
    assert out["spec"]["replicas"] == 2
    env = {e["name"]: e["value"] for e in out["spec"]["template"]["spec"]["containers"][0]["env"]}
    assert env["DB_HOST"] == "pg.stack-tenant-a.svc.cluster.local"
    assert env["DSN"] == "pg://pg.stack-tenant-a.svc.cluster.local:5432"
    assert env["UNSET"] == ""


def test_labels_are_stamped_on_resource_and_pod_template() -> None:
    template = [
        {"kind": "Deployment", "metadata": {"labels": {"keep": "me"}}, "spec": {"template": {}}},
        {"kind": "Service", "metadata": {}},
    ]
    deployment, service = render_manifest(template, context={}, labels=_LABELS)

    assert deployment["metadata"]["labels"]["keep"] == "me"
    assert deployment["metadata"]["labels"]["stack-orchestrator/node"] == "n1"
    assert deployment["spec"]["template"]["metadata"]["labels"] == _LABELS
    assert service["metadata"]["labels"] == _LABELS
    assert "template" not in service.get("spec", {})


def test_entries_without_kind_are_rejected() -> None:
    with pytest.raises(ValueError):
        render_manifest([{"metadata": {}}], context={}, labels=_LABELS)


def test_derived_secrets_are_stable_and_scoped() -> None:
    first = derive_secrets(seed="s", stack_id="st1", recipe_id="postgres", keys=["password"])
    again = derive_secrets(seed="s", stack_id="st1", recipe_id="postgres", keys=["password"])
    other_stack = derive_secrets(seed="s", stack_id="st2", recipe_id="postgres", keys=["password"])

    assert first == again
    assert len(first["password"]) == 32
    assert first != other_stack
    assert derive_secrets(seed="s", stack_id="st1", recipe_id="redis", keys=[]) == {}


def test_lone_expressions_keep_strings_that_look_numeric() -> None:
    template = [
        {
            "kind": "Secret",
            "stringData": {
                "PASSWORD": "{{ secrets.password }}",
                "PORT": "{{ config.port }}",
                "URL": "redis://:{{ secrets.password }}@{{ name }}:{{ config.port }}",
            },
        }
    ]
    context = {"name": "redis-abc", "config": {"port": "6379"}, "secrets": {"password": "12e4"}}

    [out] = render_manifest(template, context=context, labels=_LABELS)

    assert out["stringData"]["PASSWORD"] == "12e4"
    assert out["stringData"]["PORT"] == "6379"
    assert out["stringData"]["URL"] == "redis://:12e4@redis-abc:6379"


def test_jinja_expressions_and_missing_dependencies() -> None:
    template = [
        {
            "kind": "ConfigMap",
            "data": {
                "image": "{{ config.image | default('busybox:1') }}",
                "missing_dep": "{{ deps.mysql.host }}",
                "hyphenated": "{{ deps['uptime-kuma'].port }}",
                "upper": "{{ name | upper }}",
            },
        }
    ]
    context = {"name": "app", "config": {}, "deps": {"uptime-kuma": {"port": 3001}}}

    [out] = render_manifest(template, context=context, labels=_LABELS)

    assert out["data"] == {
        "image": "busybox:1",
        "missing_dep": "",
        "hyphenated": 3001,
        "upper": "APP",
    }
