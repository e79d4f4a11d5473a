"""Member, lead and event audience API routes."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from pydantic import BaseModel, Field

from timeto.membership.directory import MembershipDirectory
from timeto.models.documents import NewMemberData
from timeto.types import LeadStatus, OrgRole
from timeto.web.dependencies import get_directory

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["members"])


class AssignRoleRequest(BaseModel):
    role: OrgRole


class AddByIdentifierRequest(BaseModel):
    identifier: str = Field(min_length=1)
    role: OrgRole = OrgRole.MEMBER


class LeadStatusRequest(BaseModel):
    status: LeadStatus


class ConvertLeadRequest(BaseModel):
    user_id: str = Field(min_length=1)


@router.get("/organizations/{org_id}/members")
async def list_organization_members(
    org_id: str,
    directory: MembershipDirectory = Depends(get_directory),
) -> dict[str, Any]:
    roster = await directory.load_organization_members(org_id)
    return {
        "organization_id": roster.org_id,
        "members": [member.model_dump(mode="json") for member in roster.members],
        "warnings": [str(warning) for warning in roster.warnings],
    }


@router.post("/organizations/{org_id}/members", status_code=201)
async def add_member_by_identifier(
    org_id: str,
    body: AddByIdentifierRequest,
    directory: MembershipDirectory = Depends(get_directory),
) -> dict[str, Any]:
    member = await directory.add_member_by_identifier(org_id, body.identifier, body.role)
    return member.model_dump(mode="json")


@router.put("/organizations/{org_id}/members/{user_id}")
async def assign_member(
    org_id: str,
    user_id: str,
    body: AssignRoleRequest,
    directory: MembershipDirectory = Depends(get_directory),
) -> dict[str, Any]:
    member = await directory.assign_member_to_organization(user_id, org_id, body.role)
    return member.model_dump(mode="json")


@router.delete("/organizations/{org_id}/members/{user_id}")
async def remove_member(
    org_id: str,
    user_id: str,
    directory: MembershipDirectory = Depends(get_directory),
) -> Response:
    await directory.remove_member_from_organization(user_id, org_id)
    return Response(status_code=204)


@router.patch("/organizations/{org_id}/leads/{lead_id}")
async def update_lead_status(
    org_id: str,
    lead_id: str,
    body: LeadStatusRequest,
    directory: MembershipDirectory = Depends(get_directory),
) -> dict[str, Any]:
    lead = await directory.update_member_status(lead_id, body.status, org_id=org_id)
    return lead.model_dump(mode="json")


@router.post("/organizations/{org_id}/leads/{lead_id}/invite")
async def invite_lead(
    org_id: str,
    lead_id: str,
    directory: MembershipDirectory = Depends(get_directory),
) -> dict[str, Any]:
    lead = await directory.invite_lead(org_id, lead_id)
    return lead.model_dump(mode="json")


@router.post("/organizations/{org_id}/leads/{lead_id}/convert")
async def convert_lead(
    org_id: str,
    lead_id: str,
    body: ConvertLeadRequest,
    directory: MembershipDirectory = Depends(get_directory),
) -> dict[str, Any]:
    lead = await directory.convert_lead(org_id, lead_id, body.user_id)
    return lead.model_dump(mode="json")


@router.get("/events/{event_id}/members")
async def load_event_members(
    event_id: str,
    directory: MembershipDirectory = Depends(get_directory),
) -> dict[str, Any]:
    view = await directory.load_members(event_id)
    return {
        "organization_id": view.org_id,
        "leads": [lead.model_dump(mode="json") for lead in view.leads],
        "registered": [member.model_dump(mode="json") for member in view.registered],
    }


@router.post("/events/{event_id}/members", status_code=201)
async def add_event_member(
    event_id: str,
    body: NewMemberData,
    directory: MembershipDirectory = Depends(get_directory),
) -> dict[str, Any]:
    member_id = await directory.add_member(event_id, body)
    return {"id": member_id, "type": body.type.value}
