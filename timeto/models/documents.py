"""Entity models and the decoders that sit at the document-store boundary.

Each ``decode_*`` function is the only place a missing or malformed stored
field is turned into a default. Code past this boundary works with fully
populated models and never re-derives a default inline. Each model's
``to_document`` produces the stored (camelCase) shape.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from timeto.exceptions import ValidationError
from timeto.types import (
    EventVisibility,
    LeadStatus,
    MemberStatus,
    MemberType,
    OrgRole,
    SystemRole,
)

if TYPE_CHECKING:
    from timeto.storage.document_store import DocumentSnapshot

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _role_map(value: Any, *, source: str) -> dict[str, OrgRole]:
    """Decode a {id: role} map, dropping entries whose role is unknown."""
    if not isinstance(value, dict):
        return {}
    roles: dict[str, OrgRole] = {}
    for key, role in value.items():
        if role in OrgRole.__members__.values():
            roles[key] = OrgRole(role)
        else:
            logger.warning("unknown_role_dropped", source=source, key=key, role=role)
    return roles


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(BaseModel):
    id: str
    system_role: SystemRole = SystemRole.USER
    organizations: dict[str, OrgRole] = {}
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    profile_image_url: str = ""
    is_onboard: bool | None = None
    referral_organizations: list[str] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "systemRole": self.system_role.value,
            "organizations": {org: role.value for org, role in self.organizations.items()},
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phoneNumber": self.phone_number,
            "profileImageUrl": self.profile_image_url,
            "isOnboard": self.is_onboard,
            "referralOrganizations": list(self.referral_organizations),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


def decode_user(doc: DocumentSnapshot) -> User:
    data = doc.data
    system_role = data.get("systemRole")
    auth = data.get("auth") if isinstance(data.get("auth"), dict) else {}
    is_onboard = data.get("isOnboard")
    return User(
        id=doc.id,
        system_role=(
            SystemRole.SYSTEM_ADMIN if system_role == SystemRole.SYSTEM_ADMIN else SystemRole.USER
        ),
        organizations=_role_map(data.get("organizations"), source=doc.path),
        email=_str(data.get("email")) or _str(auth.get("email")),
        first_name=_str(data.get("firstName")),
        last_name=_str(data.get("lastName")),
        phone_number=_str(data.get("phoneNumber")),
        profile_image_url=_str(data.get("profileImageUrl")) or _str(data.get("photoUrl")),
        is_onboard=is_onboard if isinstance(is_onboard, bool) else None,
        referral_organizations=_str_list(data.get("referralOrganizations")),
        created_at=_parse_datetime(data.get("createdAt")),
        updated_at=_parse_datetime(data.get("updatedAt")),
    )


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class OrganizationSettings(BaseModel):
    allow_public_events: bool = False
    require_member_approval: bool = True
    default_event_visibility: EventVisibility = EventVisibility.ORGANIZATION

    def to_document(self) -> dict[str, Any]:
        return {
            "allowPublicEvents": self.allow_public_events,
            "requireMemberApproval": self.require_member_approval,
            "defaultEventVisibility": self.default_event_visibility.value,
        }


def decode_organization_settings(value: Any) -> OrganizationSettings:
    data = value if isinstance(value, dict) else {}
    defaults = OrganizationSettings()
    visibility = data.get("defaultEventVisibility")
    return OrganizationSettings(
        allow_public_events=bool(data.get("allowPublicEvents", defaults.allow_public_events)),
        require_member_approval=bool(
            data.get("requireMemberApproval", defaults.require_member_approval)
        ),
        default_event_visibility=(
            EventVisibility(visibility)
            if visibility in EventVisibility.__members__.values()
            else defaults.default_event_visibility
        ),
    )


class Organization(BaseModel):
    id: str
    name: str
    name_lower: str
    owner_id: str
    description: str = ""
    logo: str = ""
    parent_id: str | None = None
    members: dict[str, OrgRole] = {}
    settings: OrganizationSettings = Field(default_factory=OrganizationSettings)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Session-only augmentation, never persisted
    event_count: int = 0

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "nameLower": self.name_lower,
            "ownerId": self.owner_id,
            "description": self.description,
            "logo": self.logo,
            "parentId": self.parent_id,
            "members": {uid: role.value for uid, role in self.members.items()},
            "settings": self.settings.to_document(),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def to_snapshot(self) -> dict[str, Any]:
        """Serializable form cached client-side as ``currentOrg_{uid}``."""
        return self.model_dump(mode="json")


def decode_organization(doc: DocumentSnapshot) -> Organization:
    data = doc.data
    name = _str(data.get("name"))
    parent_id = data.get("parentId")
    return Organization(
        id=doc.id,
        name=name,
        name_lower=_str(data.get("nameLower")) or name.lower(),
        owner_id=_str(data.get("ownerId")),
        description=_str(data.get("description")),
        logo=_str(data.get("logo")),
        parent_id=parent_id if isinstance(parent_id, str) and parent_id else None,
        members=_role_map(data.get("members"), source=doc.path),
        settings=decode_organization_settings(data.get("settings")),
        created_at=_parse_datetime(data.get("createdAt")),
        updated_at=_parse_datetime(data.get("updatedAt")),
    )


def decode_organization_snapshot(value: Any) -> Organization | None:
    """Decode a cached ``currentOrg_{uid}`` value; None if unusable."""
    if not isinstance(value, dict):
        return None
    try:
        return Organization.model_validate(value)
    except ValueError:
        logger.warning("cached_organization_snapshot_invalid")
        return None


# ---------------------------------------------------------------------------
# Members and leads
# ---------------------------------------------------------------------------


class Member(BaseModel):
    user_id: str
    role: OrgRole = OrgRole.MEMBER
    status: MemberStatus = MemberStatus.ACTIVE
    added_by: str = ""
    added_at: datetime | None = None
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    photo_url: str = ""
    # True when the stored subdocument lacked role or status
    incomplete: bool = False

    def to_document(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "role": self.role.value,
            "status": self.status.value,
            "addedBy": self.added_by,
            "addedAt": _iso(self.added_at),
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phoneNumber": self.phone_number,
            "photoUrl": self.photo_url,
        }


def decode_member(doc: DocumentSnapshot) -> Member:
    data = doc.data
    role = data.get("role")
    status = data.get("status")
    role_ok = role in OrgRole.__members__.values()
    status_ok = status in MemberStatus.__members__.values()
    return Member(
        user_id=_str(data.get("userId")) or doc.id,
        role=OrgRole(role) if role_ok else OrgRole.MEMBER,
        status=MemberStatus(status) if status_ok else MemberStatus.ACTIVE,
        added_by=_str(data.get("addedBy")),
        added_at=_parse_datetime(data.get("addedAt")),
        first_name=_str(data.get("firstName")),
        last_name=_str(data.get("lastName")),
        phone_number=_str(data.get("phoneNumber")),
        photo_url=_str(data.get("profileImageUrl")) or _str(data.get("photoUrl")),
        incomplete=not (role_ok and status_ok),
    )


class Lead(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    email: str = ""
    status: LeadStatus = LeadStatus.PENDING
    converted_to: str | None = None
    invited_user_id: str | None = None
    referal_orgs: list[str] = []
    added_by: str = ""
    created_at: datetime | None = None
    photo_url: str = ""

    def to_document(self) -> dict[str, Any]:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phoneNumber": self.phone_number,
            "email": self.email,
            "status": self.status.value,
            "convertedTo": self.converted_to,
            "invitedUserId": self.invited_user_id,
            "referalOrgs": list(self.referal_orgs),
            "addedBy": self.added_by,
            "createdAt": _iso(self.created_at),
            "photoUrl": self.photo_url,
        }


def decode_lead(doc: DocumentSnapshot, org_id: str) -> Lead:
    data = doc.data
    converted_to = _str(data.get("convertedTo")) or None
    status = data.get("status")
    if converted_to:
        # A recorded conversion is final even if the status field lags behind
        lead_status = LeadStatus.TRANSFORMED
    elif status in LeadStatus.__members__.values():
        lead_status = LeadStatus(status)
    else:
        lead_status = LeadStatus.PENDING
    return Lead(
        id=doc.id,
        first_name=_str(data.get("firstName")),
        last_name=_str(data.get("lastName")),
        phone_number=_str(data.get("phoneNumber")),
        email=_str(data.get("email")),
        status=lead_status,
        converted_to=converted_to,
        invited_user_id=_str(data.get("invitedUserId")) or None,
        referal_orgs=_str_list(data.get("referalOrgs")) or [org_id],
        added_by=_str(data.get("addedBy")),
        created_at=_parse_datetime(data.get("createdAt")),
        photo_url=_str(data.get("photoUrl")),
    )


class RegisteredMember(BaseModel):
    """A person affiliated with an organization through an account."""

    id: str
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    photo_url: str = ""
    organizations: list[str] = []
    status: LeadStatus = LeadStatus.TRANSFORMED

    @property
    def has_name(self) -> bool:
        return bool(self.first_name or self.last_name)


class NewMemberData(BaseModel):
    """Input for adding a lead or member to an event's organization."""

    type: MemberType
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    email: str = ""
    user_id: str | None = None
    photo_url: str = ""


# ---------------------------------------------------------------------------
# Events and scheduled notifications
# ---------------------------------------------------------------------------


class NotificationSettings(BaseModel):
    enabled: bool = False
    reminder_times: list[int] = []

    def to_document(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "reminderTimes": list(self.reminder_times)}


def decode_notification_settings(value: Any) -> NotificationSettings | None:
    if not isinstance(value, dict):
        return None
    times = value.get("reminderTimes")
    return NotificationSettings(
        enabled=value.get("enabled") is True,
        reminder_times=(
            [t for t in times if isinstance(t, int) and not isinstance(t, bool)]
            if isinstance(times, list)
            else []
        ),
    )


class Event(BaseModel):
    id: str
    organization_id: str
    start: datetime
    title: str = ""
    description: str = ""
    owner: str = ""
    end: datetime | None = None
    visibility: EventVisibility = EventVisibility.ORGANIZATION
    notification_settings: NotificationSettings | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def reminders_enabled(self) -> bool:
        return self.notification_settings is not None and self.notification_settings.enabled

    def to_document(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "organizationId": self.organization_id,
            "owner": self.owner,
            "start": _iso(self.start),
            "end": _iso(self.end),
            "visibility": self.visibility.value,
            "notificationSettings": (
                self.notification_settings.to_document() if self.notification_settings else None
            ),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


def decode_event(doc: DocumentSnapshot) -> Event:
    data = doc.data
    start = _parse_datetime(data.get("start")) or _parse_datetime(data.get("startDate"))
    if start is None:
        msg = f"Event {doc.id} has no valid start time"
        raise ValidationError(msg)
    # Older documents carry the owning organization in ``owner`` only
    organization_id = _str(data.get("organizationId")) or _str(data.get("owner"))
    if not organization_id:
        msg = f"Event {doc.id} has no owning organization"
        raise ValidationError(msg)
    visibility = data.get("visibility")
    return Event(
        id=doc.id,
        organization_id=organization_id,
        start=start,
        title=_str(data.get("title")),
        description=_str(data.get("description")),
        owner=_str(data.get("owner")),
        end=_parse_datetime(data.get("end")) or _parse_datetime(data.get("endDate")),
        visibility=(
            EventVisibility(visibility)
            if visibility in EventVisibility.__members__.values()
            else EventVisibility.ORGANIZATION
        ),
        notification_settings=decode_notification_settings(data.get("notificationSettings")),
        created_at=_parse_datetime(data.get("createdAt")),
        updated_at=_parse_datetime(data.get("updatedAt")),
    )


class ScheduledNotification(BaseModel):
    id: str
    event_id: str
    owner: str
    time_before_event: int
    next_notification: datetime

    def to_document(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "owner": self.owner,
            "timeBeforeEvent": self.time_before_event,
            "nextNotification": _iso(self.next_notification),
        }


def decode_scheduled_notification(doc: DocumentSnapshot) -> ScheduledNotification | None:
    """Decode a reminder document; None when it is too malformed to reconcile."""
    data = doc.data
    offset = data.get("timeBeforeEvent")
    next_notification = _parse_datetime(data.get("nextNotification"))
    if not isinstance(offset, int) or next_notification is None:
        logger.warning("scheduled_notification_malformed", path=doc.path)
        return None
    return ScheduledNotification(
        id=doc.id,
        event_id=_str(data.get("eventId")),
        owner=_str(data.get("owner")),
        time_before_event=offset,
        next_notification=next_notification,
    )
