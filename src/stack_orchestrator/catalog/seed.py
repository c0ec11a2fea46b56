"""
stack_orchestrator.catalog.seed

Built-in catalog entries.

Responsibilities:
- Define the built-in recipes (postgres, redis, minio, uptime-kuma, n8n).
- Insert any that are missing at startup (idempotent; published entries are
  never rewritten).
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stack_orchestrator.db.repositories.recipes import RecipeRepo
from stack_orchestrator.db.session import session_scope
from stack_orchestrator.observability.logging import get_logger

log = get_logger(__name__)

_INSTANCE = "app.kubernetes.io/instance"


def _secret(entries: dict[str, str]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "{{ name }}-secret"},
        "type": "Opaque",
        "stringData": entries,
    }


def _secret_env(env_name: str, key: str) -> dict[str, Any]:
    return {
        "name": env_name,
        "valueFrom": {"secretKeyRef": {"name": "{{ name }}-secret", "key": key}},
    }


def _workload(
    *,
    container: str,
    env: list[dict[str, Any]] | None = None,
    args: list[str] | None = None,
    kind: str = "Deployment",
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "name": container,
        "image": "{{ config.image }}",
        "ports": [{"name": "main", "containerPort": "{{ config.port }}"}],
        "env": env or [],
        "resources": {
            "requests": {
                "cpu": "{{ config.cpu_request }}",
                "memory": "{{ config.memory_request }}",
            },
            "limits": {
                "cpu": "{{ config.cpu_limit }}",
                "memory": "{{ config.memory_limit }}",
            },
        },
    }
    if args:
        spec["args"] = args
    workload: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": {"name": "{{ name }}"},
        "spec": {
            "replicas": "{{ config.replicas }}",
            "selector": {"matchLabels": {_INSTANCE: "{{ name }}"}},
            "template": {
                "metadata": {"labels": {_INSTANCE: "{{ name }}"}},
                "spec": {"containers": [spec]},
            },
        },
    }
    if kind == "StatefulSet":
        workload["spec"]["serviceName"] = "{{ name }}"
    return workload


def _service() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "{{ name }}"},
        "spec": {
            "selector": {_INSTANCE: "{{ name }}"},
            "ports": [{"name": "main", "port": "{{ config.port }}", "targetPort": "main"}],
        },
    }


def _defaults(image: str, port: int, **extra: Any) -> dict[str, Any]:
    return {
        "image": image,
        "port": port,
        "replicas": 1,
        "cpu_request": "50m",
        "memory_request": "128Mi",
        "cpu_limit": "500m",
        "memory_limit": "512Mi",
        **extra,
    }


def web_app_recipe(*, container: str, image: str, port: int) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    """Manifest template and defaults for a single-container web app."""

    return [_workload(container=container), _service()], _defaults(image, port)


BUILTIN_RECIPES: list[dict[str, Any]] = [
    {
        "slug": "postgres",
        "display_name": "PostgreSQL",
        "category": "database",
        "description": "Relational database. Other apps use it to store their data.",
        "dependencies": [],
        "secret_keys": ["password"],
        "tags": ["sql", "database", "postgresql"],
        "default_config": _defaults(
            "docker.io/library/postgres:16-alpine",
            5432,
            database="app",
            username="app",
            memory_request="256Mi",
        ),
        "manifest_template": [
            _secret({"POSTGRES_PASSWORD": "{{ secrets.password }}"}),
            _workload(
                container="postgres",
                kind="StatefulSet",
                env=[
                    {"name": "POSTGRES_DB", "value": "{{ config.database }}"},
                    {"name": "POSTGRES_USER", "value": "{{ config.username }}"},
                    _secret_env("POSTGRES_PASSWORD", "POSTGRES_PASSWORD"),
                ],
            ),
            _service(),
        ],
    },
    {
        "slug": "redis",
        "display_name": "Redis",
        "category": "cache",
        "description": "In-memory key/value store used for caching and queues.",
        "dependencies": [],
        "secret_keys": ["password"],
        "tags": ["cache", "queue", "key-value"],
        "default_config": _defaults("docker.io/library/redis:7-alpine", 6379),
        "manifest_template": [
            _secret({"REDIS_PASSWORD": "{{ secrets.password }}"}),
            _workload(
                container="redis",
                env=[_secret_env("REDIS_PASSWORD", "REDIS_PASSWORD")],
                args=["--requirepass", "$(REDIS_PASSWORD)"],
            ),
            _service(),
        ],
    },
    {
        "slug": "minio",
        "display_name": "MinIO",
        "category": "storage",
        "description": "S3-compatible object storage for files and backups.",
        "dependencies": [],
        "secret_keys": ["root_password"],
        "tags": ["s3", "object-storage", "files"],
        "default_config": _defaults(
            "quay.io/minio/minio:latest", 9000, root_user="admin", memory_request="256Mi"
        ),
        "manifest_template": [
            _secret({"MINIO_ROOT_PASSWORD": "{{ secrets.root_password }}"}),
            _workload(
                container="minio",
                kind="StatefulSet",
                env=[
                    {"name": "MINIO_ROOT_USER", "value": "{{ config.root_user }}"},
                    _secret_env("MINIO_ROOT_PASSWORD", "MINIO_ROOT_PASSWORD"),
                ],
                args=["server", "/data"],
            ),
            _service(),
        ],
    },
    {
        "slug": "uptime-kuma",
        "display_name": "Uptime Kuma",
        "category": "monitoring",
        "description": "Watches your websites and services and alerts when they go down.",
        "dependencies": [],
        "secret_keys": [],
        "tags": ["monitoring", "status-page", "alerts"],
        "default_config": _defaults("docker.io/louislam/uptime-kuma:1", 3001),
        "manifest_template": [_workload(container="uptime-kuma"), _service()],
    },
    {
        "slug": "n8n",
        "display_name": "n8n",
        "category": "automation",
        "description": "Workflow automation. Connects apps and runs scheduled jobs.",
        "dependencies": ["postgres"],
        "secret_keys": ["encryption_key"],
        "tags": ["automation", "workflows", "zapier-alternative"],
        "default_config": _defaults(
            "docker.io/n8nio/n8n:latest", 5678, memory_request="256Mi"
        ),
        "manifest_template": [
            _secret(
                {
                    "N8N_ENCRYPTION_KEY": "{{ secrets.encryption_key }}",
                    "DB_POSTGRESDB_PASSWORD": "{{ deps.postgres.secrets.password }}",
                }
            ),
            _workload(
                container="n8n",
                env=[
                    {"name": "DB_TYPE", "value": "postgresdb"},
                    {"name": "DB_POSTGRESDB_HOST", "value": "{{ deps.postgres.host }}"},
                    {"name": "DB_POSTGRESDB_PORT", "value": "{{ deps.postgres.port }}"},
                    {
                        "name": "DB_POSTGRESDB_DATABASE",
                        "value": "{{ deps.postgres.config.database }}",
                    },
                    {
                        "name": "DB_POSTGRESDB_USER",
                        "value": "{{ deps.postgres.config.username }}",
                    },
                    _secret_env("DB_POSTGRESDB_PASSWORD", "DB_POSTGRESDB_PASSWORD"),
                    _secret_env("N8N_ENCRYPTION_KEY", "N8N_ENCRYPTION_KEY"),
                    {"name": "N8N_PORT", "value": "5678"},
                    {"name": "GENERIC_TIMEZONE", "value": "UTC"},
                ],
            ),
            _service(),
        ],
    },
]


async def seed_catalog(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """
    Insert built-in recipes that are not published yet. Returns the number inserted.
    """

    inserted = 0
    async with session_scope(session_factory) as session:
        repo = RecipeRepo(session)
        for entry in BUILTIN_RECIPES:
            if await repo.get_by_slug(entry["slug"]) is not None:
                continue
            await repo.create(source="builtin", **entry)
            inserted += 1
    if inserted:
        log.info("catalog.seeded", inserted=inserted)
    return inserted


# --- Module Notes -----------------------------------------------------------
# Dependency connection info is exposed to templates as `deps.<slug>.*` (host, port,
# config, secrets); see `services.deployer` for how that context is assembled.
