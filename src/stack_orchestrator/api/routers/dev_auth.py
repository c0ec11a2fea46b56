"""
stack_orchestrator.api.routers.dev_auth

Development token endpoint.

Responsibilities:
- Mint short-lived bearer tokens for a user/tenant/role outside production.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from starlette.status import HTTP_404_NOT_FOUND

from stack_orchestrator.api.deps import settings_dep
from stack_orchestrator.auth.deps import jwt_config
from stack_orchestrator.auth.jwt import issue_token
from stack_orchestrator.settings import Settings

router = APIRouter(prefix="/v1/dev", tags=["dev"])


class DevTokenRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=256)
    tenant_id: str = Field(min_length=1, max_length=128)
    role: Literal["owner", "admin", "member", "viewer"] = "owner"
    ttl_minutes: int = Field(default=60, ge=1, le=24 * 60)


class DevTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


@router.post("/token", response_model=DevTokenResponse)
async def mint_dev_token(
    body: DevTokenRequest,
    settings: Settings = Depends(settings_dep),
) -> DevTokenResponse:
    if settings.env == "prod":
        raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="Not found")

    token = issue_token(
        cfg=jwt_config(settings),
        user_id=body.user_id,
        tenant_id=body.tenant_id,
        role=body.role,
        ttl=timedelta(minutes=body.ttl_minutes),
    )
    return DevTokenResponse(access_token=token)
