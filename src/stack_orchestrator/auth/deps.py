"""
stack_orchestrator.auth.deps

FastAPI dependency functions for authentication and authorization.

Responsibilities:
- Convert a bearer token into a typed `RequestContext`.
- Enforce mutation rights via a reusable dependency.
"""

from __future__ import annotations

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from stack_orchestrator.auth.jwt import (
    JwtConfig,
    JwtValidationError,
    context_from_claims,
    decode_and_validate,
)
from stack_orchestrator.auth.models import RequestContext
from stack_orchestrator.errors import Forbidden, Unauthorized
from stack_orchestrator.observability.logging import bind_request_identity
from stack_orchestrator.settings import Settings, get_settings

_bearer = HTTPBearer(auto_error=False)


def jwt_config(settings: Settings) -> JwtConfig:
    return JwtConfig(
        alg=settings.jwt_alg,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        secret=settings.jwt_secret,
    )


def get_request_context(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> RequestContext:
    if creds is None or not creds.credentials:
        raise Unauthorized("Missing bearer token")

    try:
        payload = decode_and_validate(cfg=jwt_config(settings), token=creds.credentials)
        ctx = context_from_claims(payload)
    except JwtValidationError as e:
        raise Unauthorized(f"Invalid token: {e}") from e

    bind_request_identity(user_id=ctx.user_id, tenant_id=ctx.tenant_id)
    return ctx


def require_mutation_rights(
    ctx: RequestContext = Depends(get_request_context),
) -> RequestContext:
    if not ctx.can_mutate:
        raise Forbidden("Role is not allowed to change stacks")
    return ctx


# --- Module Notes -----------------------------------------------------------
# Errors are raised as orchestrator exceptions and mapped to 401/403 by `api.errors`.
