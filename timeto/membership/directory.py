"""Member and lead administration for organizations.

A role within an organization is recorded three times: the authoritative
``organizations/{org}/members/{uid}`` subdocument, the ``members`` map on the
organization (which drives visibility) and ``users/{uid}.organizations``.
There is no multi-document transaction, so writes are full-value and
repeatable, and every roster read repairs whichever copy disagrees with the
subdocument.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from timeto.exceptions import (
    AuthorizationDenied,
    ConsistencyWarning,
    NotFound,
    TransientStoreError,
    ValidationError,
)
from timeto.models.documents import (
    Event,
    Lead,
    Member,
    NewMemberData,
    Organization,
    RegisteredMember,
    User,
    decode_event,
    decode_lead,
    decode_member,
    decode_organization,
    decode_user,
    utc_now,
)
from timeto.storage.collections import (
    COLLECTION_USERS,
    event_path,
    lead_path,
    leads_collection,
    member_path,
    members_collection,
    organization_path,
    public_event_path,
    user_path,
)
from timeto.storage.document_store import DELETE_FIELD
from timeto.types import LeadStatus, MemberStatus, MemberType, OrgRole
from timeto.utils.retry import retry

if TYPE_CHECKING:
    from timeto.storage.document_store import DocumentStore
    from timeto.tenancy.context import TenancySession
    from timeto.tenancy.session import TenancySessionManager

logger = structlog.get_logger(__name__)

_PHONE_NOISE = re.compile(r"[^\d+]")
_PHONE_LIKE = re.compile(r"^\+?[\d\s().-]{5,}$")


def normalize_phone(phone: str) -> str:
    """Strip formatting so ``+1 (555) 010-0000`` and ``+15550100000`` compare equal."""
    return _PHONE_NOISE.sub("", phone)


@dataclass(slots=True)
class OrganizationRoster:
    """Members of one organization plus any repairs made while reading them."""

    org_id: str
    members: list[Member] = field(default_factory=list)
    warnings: list[ConsistencyWarning] = field(default_factory=list)


@dataclass(slots=True)
class MemberDirectoryView:
    """The two audience views of an event's organization."""

    org_id: str
    leads: list[Lead] = field(default_factory=list)
    registered: list[RegisteredMember] = field(default_factory=list)


class MembershipDirectory:
    def __init__(
        self,
        store: DocumentStore,
        sessions: TenancySessionManager,
        write_attempts: int = 3,
        retry_delay_ms: int = 200,
        on_roles_changed: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._write_attempts = write_attempts
        self._retry_delay_ms = retry_delay_ms
        self._on_roles_changed = on_roles_changed

    @property
    def _session(self) -> TenancySession:
        return self._sessions.session

    def _roles_changed(self, user_id: str) -> None:
        """Tell other sessions of ``user_id`` that their role snapshot is stale."""
        if self._on_roles_changed is not None and user_id != self._session.require_user():
            self._on_roles_changed(user_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _get_organization(self, org_id: str) -> Organization:
        doc = await self._store.get(organization_path(org_id))
        if doc is None:
            raise NotFound("Organization", org_id)
        return decode_organization(doc)

    async def _get_user(self, user_id: str) -> User:
        doc = await self._store.get(user_path(user_id))
        if doc is None:
            raise NotFound("User", user_id)
        return decode_user(doc)

    async def _get_lead(self, org_id: str, lead_id: str) -> Lead:
        doc = await self._store.get(lead_path(org_id, lead_id))
        if doc is None:
            raise NotFound("Lead", lead_id)
        return decode_lead(doc, org_id)

    async def _resolve_event(self, event_id: str) -> Event:
        doc = await self._store.get(event_path(event_id))
        if doc is None:
            doc = await self._store.get(public_event_path(event_id))
        if doc is None:
            raise NotFound("Event", event_id)
        return decode_event(doc)

    def _require_manager(self, org_id: str) -> str:
        user_id = self._session.require_user()
        if not self._session.resolver.can_manage_organization(org_id):
            msg = f"Only owners and admins can manage members of {org_id}"
            raise AuthorizationDenied(msg)
        return user_id

    def _require_viewer(self, org_id: str) -> str:
        user_id = self._session.require_user()
        if not self._session.resolver.can_view_organization(org_id):
            msg = f"Not a member of organization {org_id}"
            raise AuthorizationDenied(msg)
        return user_id

    async def find_user(self, identifier: str) -> User | None:
        """Find an account by email, then phone number, then user id."""
        identifier = identifier.strip()
        if not identifier:
            msg = "An email, phone number or user id is required"
            raise ValidationError(msg)
        if "@" in identifier:
            docs = await self._store.query(COLLECTION_USERS, "email", "==", identifier)
            if docs:
                return decode_user(docs[0])
        if _PHONE_LIKE.match(identifier):
            phone = normalize_phone(identifier)
            docs = await self._store.query(COLLECTION_USERS, "phoneNumber", "==", identifier)
            if not docs and phone != identifier:
                docs = await self._store.query(COLLECTION_USERS, "phoneNumber", "==", phone)
            if docs:
                return decode_user(docs[0])
        doc = await self._store.get(user_path(identifier)) if "/" not in identifier else None
        return decode_user(doc) if doc else None

    # ------------------------------------------------------------------
    # Role administration
    # ------------------------------------------------------------------

    async def _write_with_retry(
        self, operation: str, unit_of_work: Callable[[], Awaitable[None]]
    ) -> None:
        wrapped = retry(
            max_attempts=self._write_attempts,
            delay_ms=self._retry_delay_ms,
            retry_on=(TransientStoreError,),
        )(unit_of_work)
        try:
            await wrapped()
        except TransientStoreError:
            logger.error("membership_write_failed", operation=operation)
            raise

    async def assign_member_to_organization(
        self, user_id: str, org_id: str, role: OrgRole
    ) -> Member:
        """Give ``user_id`` ``role`` in ``org_id``, writing all three copies."""
        caller_id = self._require_manager(org_id)
        role = OrgRole(role)
        org = await self._get_organization(org_id)
        if user_id == org.owner_id and role != OrgRole.OWNER:
            msg = "The organization owner cannot be demoted"
            raise ValidationError(msg)
        if role == OrgRole.OWNER and user_id != org.owner_id:
            msg = "Ownership cannot be granted through member assignment"
            raise ValidationError(msg)
        user = await self._get_user(user_id)

        existing_doc = await self._store.get(member_path(org_id, user_id))
        existing = decode_member(existing_doc) if existing_doc else None
        member = Member(
            user_id=user_id,
            role=role,
            status=MemberStatus.ACTIVE,
            added_by=existing.added_by if existing and existing.added_by else caller_id,
            added_at=existing.added_at if existing and existing.added_at else utc_now(),
            first_name=user.first_name,
            last_name=user.last_name,
            phone_number=user.phone_number,
            photo_url=user.profile_image_url,
        )

        async def write() -> None:
            await self._store.set(member_path(org_id, user_id), member.to_document(), merge=True)
            await self._store.set(
                user_path(user_id), {"organizations": {org_id: role.value}}, merge=True
            )
            await self._store.update(organization_path(org_id), {f"members.{user_id}": role.value})

        await self._write_with_retry("assign", write)
        self._session.set_member_role(org_id, user_id, role)
        self._roles_changed(user_id)
        logger.info(
            "member_assigned", org_id=org_id, user_id=user_id, role=role.value, by=caller_id
        )
        return member

    async def remove_member_from_organization(self, user_id: str, org_id: str) -> None:
        caller_id = self._session.require_user()
        if caller_id != user_id:
            self._require_manager(org_id)
        org = await self._get_organization(org_id)
        if user_id == org.owner_id:
            msg = "The organization owner cannot be removed"
            raise ValidationError(msg)

        async def write() -> None:
            await self._store.delete(member_path(org_id, user_id))
            try:
                await self._store.update(
                    user_path(user_id), {f"organizations.{org_id}": DELETE_FIELD}
                )
            except NotFound:
                logger.warning("member_user_document_missing", org_id=org_id, user_id=user_id)
            await self._store.update(
                organization_path(org_id), {f"members.{user_id}": DELETE_FIELD}
            )

        await self._write_with_retry("remove", write)
        self._session.set_member_role(org_id, user_id, None)
        self._roles_changed(user_id)
        if caller_id == user_id:
            self._session.remove_organization(org_id)
        logger.info("member_removed", org_id=org_id, user_id=user_id, by=caller_id)

    async def add_member_by_identifier(
        self, org_id: str, identifier: str, role: OrgRole = OrgRole.MEMBER
    ) -> Member:
        self._require_manager(org_id)
        user = await self.find_user(identifier)
        if user is None:
            raise NotFound("User", identifier)
        return await self.assign_member_to_organization(user.id, org_id, role)

    async def load_organization_members(self, org_id: str) -> OrganizationRoster:
        """Read the roster and repair any copy that disagrees with it.

        Empty or partial member subdocuments are backfilled, ``members`` map
        entries without a subdocument get one, and stale role mirrors are
        overwritten from the subdocument. A failed repair is logged and the
        read carries on with the best data available.
        """
        self._require_viewer(org_id)
        org = await self._get_organization(org_id)
        return await self._read_roster(org)

    async def _read_roster(self, org: Organization) -> OrganizationRoster:
        org_id = org.id
        roster = OrganizationRoster(org_id=org_id)

        docs = await self._store.list(members_collection(org_id))
        members: dict[str, Member] = {}
        for doc in docs:
            member = decode_member(doc)
            if member.incomplete:
                member = member.model_copy(
                    update={"role": org.members.get(member.user_id, member.role)}
                )
                await self._repair(
                    roster,
                    member,
                    f"Member {member.user_id} of {org_id} was incomplete",
                    self._backfill_member(org_id, member),
                )
            members[member.user_id] = member

        for user_id, role in org.members.items():
            if user_id in members:
                continue
            member = Member(user_id=user_id, role=role, added_by=org.owner_id, incomplete=True)
            await self._repair(
                roster,
                member,
                f"Member {user_id} of {org_id} had no member document",
                self._backfill_member(org_id, member),
            )
            members[user_id] = member

        for member in members.values():
            member = await self._reconcile_mirrors(roster, org, member)
            roster.members.append(member.model_copy(update={"incomplete": False}))
            self._session.set_member_role(org_id, member.user_id, member.role)

        return roster

    async def _backfill_member(self, org_id: str, member: Member) -> None:
        document = member.to_document()
        if member.added_at is None:
            document["addedAt"] = utc_now().isoformat()
        await self._store.set(member_path(org_id, member.user_id), document, merge=True)

    async def _repair(
        self,
        roster: OrganizationRoster,
        member: Member,
        message: str,
        write: Awaitable[None],
    ) -> None:
        warning = ConsistencyWarning(message, user_id=member.user_id, org_id=roster.org_id)
        roster.warnings.append(warning)
        try:
            await write
        except TransientStoreError as exc:
            logger.warning(
                "membership_repair_failed",
                org_id=roster.org_id,
                user_id=member.user_id,
                reason=message,
                error=str(exc),
            )
            return
        logger.warning(
            "membership_repaired", org_id=roster.org_id, user_id=member.user_id, reason=message
        )

    async def _reconcile_mirrors(
        self, roster: OrganizationRoster, org: Organization, member: Member
    ) -> Member:
        if org.members.get(member.user_id) != member.role:
            await self._repair(
                roster,
                member,
                f"members map of {org.id} disagreed for {member.user_id}",
                self._store.update(
                    organization_path(org.id), {f"members.{member.user_id}": member.role.value}
                ),
            )
            self._roles_changed(member.user_id)

        user_doc = await self._store.get(user_path(member.user_id))
        if user_doc is None:
            return member
        user = decode_user(user_doc)
        if user.organizations.get(org.id) != member.role:
            await self._repair(
                roster,
                member,
                f"Role mirror of {member.user_id} disagreed for {org.id}",
                self._store.set(
                    user_path(member.user_id),
                    {"organizations": {org.id: member.role.value}},
                    merge=True,
                ),
            )
            self._roles_changed(member.user_id)
        if member.first_name or member.last_name:
            return member
        return member.model_copy(
            update={
                "first_name": user.first_name,
                "last_name": user.last_name,
                "phone_number": member.phone_number or user.phone_number,
                "photo_url": member.photo_url or user.profile_image_url,
            }
        )

    # ------------------------------------------------------------------
    # Lead / member directory
    # ------------------------------------------------------------------

    async def load_members(self, event_id: str) -> MemberDirectoryView:
        """Leads and registered members of the organization that owns ``event_id``.

        Members come from the same repairing read as the roster, so partial
        member documents are backfilled here too.
        """
        event = await self._resolve_event(event_id)
        org_id = event.organization_id
        self._require_viewer(org_id)
        org = await self._get_organization(org_id)

        lead_docs = await self._store.list(leads_collection(org_id))
        leads = [decode_lead(doc, org_id) for doc in lead_docs]

        registered: dict[str, RegisteredMember] = {}
        roster = await self._read_roster(org)
        for member in roster.members:
            registered[member.user_id] = RegisteredMember(
                id=member.user_id,
                first_name=member.first_name,
                last_name=member.last_name,
                phone_number=member.phone_number,
                photo_url=member.photo_url,
                organizations=[org_id],
            )
        referred = await self._store.query(
            COLLECTION_USERS, "referralOrganizations", "array-contains", org_id
        )
        for doc in referred:
            user = decode_user(doc)
            if user.is_onboard is False:
                continue
            registered[user.id] = RegisteredMember(
                id=user.id,
                first_name=user.first_name,
                last_name=user.last_name,
                phone_number=user.phone_number,
                photo_url=user.profile_image_url,
                organizations=user.referral_organizations or [org_id],
            )

        view = MemberDirectoryView(
            org_id=org_id,
            leads=leads,
            registered=[member for member in registered.values() if member.has_name],
        )
        await self._mark_conversions(view)
        logger.debug(
            "members_loaded",
            event_id=event_id,
            org_id=org_id,
            leads=len(view.leads),
            registered=len(view.registered),
        )
        return view

    async def _mark_conversions(self, view: MemberDirectoryView) -> None:
        by_phone = {
            normalize_phone(member.phone_number): member.id
            for member in view.registered
            if normalize_phone(member.phone_number)
        }
        for index, lead in enumerate(view.leads):
            if lead.status == LeadStatus.TRANSFORMED:
                continue
            user_id = by_phone.get(normalize_phone(lead.phone_number))
            if not user_id:
                continue
            try:
                await self._store.update(
                    lead_path(view.org_id, lead.id),
                    {"status": LeadStatus.TRANSFORMED.value, "convertedTo": user_id},
                )
            except (TransientStoreError, NotFound) as exc:
                logger.warning(
                    "lead_conversion_mark_failed",
                    org_id=view.org_id,
                    lead_id=lead.id,
                    error=str(exc),
                )
                continue
            view.leads[index] = lead.model_copy(
                update={"status": LeadStatus.TRANSFORMED, "converted_to": user_id}
            )
            logger.info("lead_converted", org_id=view.org_id, lead_id=lead.id, user_id=user_id)

    async def add_member(self, event_id: str, data: NewMemberData) -> str:
        """Add a lead or a member to the organization owning ``event_id``; returns its id."""
        event = await self._resolve_event(event_id)
        org_id = event.organization_id
        caller_id = self._require_manager(org_id)

        if data.type == MemberType.MEMBER:
            if not data.user_id:
                msg = "A member needs a user id"
                raise ValidationError(msg)
            await self.assign_member_to_organization(data.user_id, org_id, OrgRole.MEMBER)
            return data.user_id

        if not (data.first_name.strip() or data.last_name.strip() or data.phone_number.strip()):
            msg = "A lead needs a name or a phone number"
            raise ValidationError(msg)
        lead = Lead(
            id="",
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            phone_number=data.phone_number.strip(),
            email=data.email.strip(),
            status=LeadStatus.PENDING,
            referal_orgs=[org_id],
            added_by=caller_id,
            created_at=utc_now(),
            photo_url=data.photo_url,
        )
        lead_id = await self._store.add(leads_collection(org_id), lead.to_document())
        logger.info("lead_added", org_id=org_id, lead_id=lead_id, by=caller_id)
        return lead_id

    async def update_member_status(
        self, member_id: str, status: LeadStatus, org_id: str | None = None
    ) -> Lead:
        """Set a lead's status.

        Only ``convert_lead`` moves a lead into ``transformed`` and nothing moves it out.
        """
        if org_id is None:
            current = self._session.current_organization
            if current is None:
                msg = "No organization selected"
                raise ValidationError(msg)
            org_id = current.id
        self._require_manager(org_id)
        status = LeadStatus(status)
        lead = await self._get_lead(org_id, member_id)
        if lead.status == LeadStatus.TRANSFORMED and status != LeadStatus.TRANSFORMED:
            msg = f"Lead {member_id} has already converted and cannot become {status.value}"
            raise ValidationError(msg)
        if lead.status == status:
            return lead
        if status == LeadStatus.TRANSFORMED:
            msg = f"Lead {member_id} must be converted to an account, not set to transformed"
            raise ValidationError(msg)
        await self._store.update(lead_path(org_id, member_id), {"status": status.value})
        logger.info(
            "lead_status_updated", org_id=org_id, lead_id=member_id, status=status.value
        )
        return lead.model_copy(update={"status": status})

    async def invite_lead(self, org_id: str, lead_id: str) -> Lead:
        """Mark a lead invited after matching it to an account by phone number."""
        self._require_manager(org_id)
        lead = await self._get_lead(org_id, lead_id)
        if lead.status == LeadStatus.TRANSFORMED:
            msg = f"Lead {lead_id} has already converted"
            raise ValidationError(msg)
        if not lead.phone_number:
            msg = f"Lead {lead_id} has no phone number to match"
            raise ValidationError(msg)
        user = await self.find_user(lead.phone_number)
        if user is None:
            raise NotFound("User", lead.phone_number)
        await self._store.update(
            lead_path(org_id, lead_id),
            {"status": LeadStatus.INVITED.value, "invitedUserId": user.id},
        )
        logger.info("lead_invited", org_id=org_id, lead_id=lead_id, user_id=user.id)
        return lead.model_copy(update={"status": LeadStatus.INVITED, "invited_user_id": user.id})

    async def convert_lead(self, org_id: str, lead_id: str, user_id: str) -> Lead:
        self._require_manager(org_id)
        lead = await self._get_lead(org_id, lead_id)
        if lead.status == LeadStatus.TRANSFORMED:
            if lead.converted_to == user_id:
                return lead
            msg = f"Lead {lead_id} was already converted to another account"
            raise ValidationError(msg)
        await self._get_user(user_id)
        await self._store.update(
            lead_path(org_id, lead_id),
            {"status": LeadStatus.TRANSFORMED.value, "convertedTo": user_id},
        )
        logger.info("lead_converted", org_id=org_id, lead_id=lead_id, user_id=user_id)
        return lead.model_copy(update={"status": LeadStatus.TRANSFORMED, "converted_to": user_id})
