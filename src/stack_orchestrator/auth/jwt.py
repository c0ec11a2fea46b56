"""
stack_orchestrator.auth.jwt

JWT issuing and validation helpers.

Responsibilities:
- Issue short-lived JWTs for local/dev scenarios and tests.
- Decode and validate JWTs with strict claim requirements.
- Map validated claims onto a `RequestContext`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from jwt import InvalidTokenError

from stack_orchestrator.auth.models import ROLES, RequestContext


@dataclass(frozen=True, slots=True)
class JwtConfig:
    alg: str
    issuer: str
    audience: str
    secret: str


class JwtValidationError(Exception):
    pass


def issue_token(
    *,
    cfg: JwtConfig,
    user_id: str,
    tenant_id: str,
    role: str,
    ttl: timedelta = timedelta(hours=1),
) -> str:
    now = datetime.now(tz=UTC)
    payload: dict[str, Any] = {
        "iss": cfg.issuer,
        "aud": cfg.audience,
        "sub": user_id,
        "tenant_id": tenant_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.alg)


def decode_and_validate(*, cfg: JwtConfig, token: str) -> dict[str, Any]:
    try:
        return jwt.decode(
            token,
            cfg.secret,
            algorithms=[cfg.alg],
            issuer=cfg.issuer,
            audience=cfg.audience,
            options={
                "require": ["exp", "iat", "iss", "aud", "sub"],
            },
        )
    except InvalidTokenError as e:
        raise JwtValidationError(str(e)) from e


def context_from_claims(payload: dict[str, Any]) -> RequestContext:
    user_id = str(payload.get("sub", "")).strip()
    tenant_id = str(payload.get("tenant_id", "")).strip()
    role = str(payload.get("role", "")).strip()
    if not user_id:
        raise JwtValidationError("missing subject")
    if not tenant_id:
        raise JwtValidationError("missing tenant_id")
    if role not in ROLES:
        raise JwtValidationError(f"unknown role '{role}'")
    return RequestContext(user_id=user_id, tenant_id=tenant_id, role=role)


# --- Module Notes -----------------------------------------------------------
# Production identity providers usually sign with RS256 + JWKS; HS256 keeps the
# service self-contained for development.
