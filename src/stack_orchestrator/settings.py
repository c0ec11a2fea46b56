"""
stack_orchestrator.settings

Central configuration model (Pydantic Settings).

Responsibilities:
- Provide strongly-typed, env-driven settings for all layers.
- Hide secrets from repr/logging (JWT secret, cluster token, secret seed).
- Offer a cached settings instance for dependency injection.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single settings object injected across layers.
    Defaults are safe for local development against the in-memory cluster.
    """

    model_config = SettingsConfigDict(env_prefix="STACKO_", case_sensitive=False)

    # Environment controls toggle behavior like auto-init DB tables.
    env: Literal["dev", "test", "prod"] = "dev"
    service_name: str = "stack-orchestrator"
    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Auth
    jwt_alg: str = "HS256"
    jwt_issuer: str = "stack-orchestrator"
    jwt_audience: str = "stack-api"
    jwt_secret: str = Field(default="dev-secret-change-me", repr=False)

    # Persistence
    database_url: str = "sqlite+aiosqlite:///./stacks.db"
    seed_catalog: bool = True

    # Cluster
    cluster_backend: Literal["memory", "kubernetes"] = "memory"
    kube_api_url: str = "https://kubernetes.default.svc"
    kube_token: str = Field(default="", repr=False)
    kube_ca_path: str | None = None
    kube_verify_tls: bool = True
    kube_timeout_seconds: float = 15.0
    namespace_prefix: str = "stack-"
    # Seed for deterministic per-stack credentials rendered into manifests.
    secret_seed: str = Field(default="dev-seed-change-me", repr=False)

    # External chart search used by the agent when the catalog has no match.
    chart_search_url: str = "https://artifacthub.io/api/v1"
    chart_search_timeout_seconds: float = 5.0

    # Reconciliation cadence
    stack_poll_interval_seconds: float = 5.0
    rollout_poll_interval_seconds: float = 2.0
    node_timeout_seconds: float = 300.0
    observe_retry_budget: int = 3

    # Bounded retry for catalog/cluster transport errors
    transport_retry_attempts: int = 3
    transport_retry_base_delay_seconds: float = 0.5

    # Agent confirmation gate
    confirmation_ttl_seconds: int = 600


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Cache avoids re-parsing env vars for each request dependency.
    return Settings()


# --- Module Notes -----------------------------------------------------------
# Timing knobs (poll intervals, timeouts, retry delays) are shrunk in tests so the
# full lifecycle runs in milliseconds against the in-memory cluster.
