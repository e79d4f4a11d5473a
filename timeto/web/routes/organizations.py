"""Organization API routes."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from timeto.exceptions import AuthorizationDenied, NotFound
from timeto.tenancy.organizations import CreateOrganizationData, OrganizationLifecycle
from timeto.tenancy.session import TenancySessionManager
from timeto.web.dependencies import get_lifecycle, get_session_manager

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/organizations", tags=["organizations"])


class CreateOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str = ""
    logo: str = ""
    parent_id: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


@router.get("")
async def list_organizations(
    manager: TenancySessionManager = Depends(get_session_manager),
) -> list[dict[str, Any]]:
    return [org.model_dump(mode="json") for org in manager.user_organizations]


@router.post("", status_code=201)
async def create_organization(
    body: CreateOrganizationRequest,
    lifecycle: OrganizationLifecycle = Depends(get_lifecycle),
) -> dict[str, Any]:
    org = await lifecycle.create_organization(CreateOrganizationData(**body.model_dump()))
    return org.model_dump(mode="json")


@router.get("/name-available")
async def name_available(
    name: str = Query(min_length=1),
    lifecycle: OrganizationLifecycle = Depends(get_lifecycle),
) -> dict[str, Any]:
    return {"name": name, "available": await lifecycle.is_name_available(name)}


@router.get("/{org_id}")
async def get_organization(
    org_id: str,
    manager: TenancySessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    if not manager.session.resolver.can_view_organization(org_id):
        msg = f"Not a member of organization {org_id}"
        raise AuthorizationDenied(msg)
    org = await manager.refresh_organization(org_id)
    if org is None:
        raise NotFound("Organization", org_id)
    return org.model_dump(mode="json")


@router.patch("/{org_id}")
async def update_organization(
    org_id: str,
    patch: dict[str, Any],
    lifecycle: OrganizationLifecycle = Depends(get_lifecycle),
) -> dict[str, Any]:
    org = await lifecycle.update_organization(org_id, patch)
    return org.model_dump(mode="json")


@router.delete("/{org_id}")
async def delete_organization(
    org_id: str,
    lifecycle: OrganizationLifecycle = Depends(get_lifecycle),
) -> Response:
    await lifecycle.delete_organization(org_id)
    return Response(status_code=204)
