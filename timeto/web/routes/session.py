"""Session API routes: state, current organization, roles."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from pydantic import BaseModel, Field

from timeto.tenancy.context import AuthIdentity
from timeto.tenancy.session import TenancySessionManager
from timeto.web.dependencies import (
    TenancyServices,
    get_identity,
    get_services,
    get_session_manager,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/session", tags=["session"])


class SwitchOrganizationRequest(BaseModel):
    organization_id: str = Field(min_length=1)


def session_payload(manager: TenancySessionManager) -> dict[str, Any]:
    session = manager.session
    current = manager.current_organization
    return {
        "user_id": session.user_id,
        "state": session.state.value,
        "error": session.error,
        "is_system_admin": session.resolver.is_system_admin(),
        "current_organization": current.model_dump(mode="json") if current else None,
        "organizations": [org.model_dump(mode="json") for org in manager.user_organizations],
        "consistency_warnings": [
            {"detail": str(w), "user_id": w.user_id, "organization_id": w.org_id}
            for w in session.consistency_warnings
        ],
    }


@router.get("")
async def get_session(
    manager: TenancySessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    return session_payload(manager)


@router.post("/reload")
async def reload_session(
    manager: TenancySessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    await manager.reload()
    return session_payload(manager)


@router.put("/current")
async def switch_organization(
    body: SwitchOrganizationRequest,
    manager: TenancySessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    org = await manager.switch_organization(body.organization_id)
    return org.model_dump(mode="json")


@router.get("/roles/{org_id}")
async def get_roles(
    org_id: str,
    manager: TenancySessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    resolver = manager.session.resolver
    role = resolver.get_current_user_role(org_id)
    return {
        "organization_id": org_id,
        "role": role.value if role else None,
        "is_system_admin": resolver.is_system_admin(),
        "can_create_organization": resolver.can_create_organization(),
        "can_create_sub_organization": resolver.can_create_sub_organization(org_id),
        "can_manage": resolver.can_manage_organization(org_id),
        "can_delete": resolver.can_delete_organization(org_id),
    }


@router.post("/sign-out")
async def sign_out(
    identity: AuthIdentity = Depends(get_identity),
    services: TenancyServices = Depends(get_services),
) -> Response:
    await services.sign_out(identity.uid)
    logger.info("session_signed_out", user_id=identity.uid)
    return Response(status_code=204)
