"""Organization lifecycle: create, update and delete.

Creation writes two documents (the organization, then the creator's role
mirror) without a transaction. If the second write fails the organization
exists with the mirror out of sync; that gap is logged, not rolled back.
Deletion does not cascade to the organization's members, leads or events.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from timeto.exceptions import (
    AuthorizationDenied,
    CreationInProgress,
    NotFound,
    TransientStoreError,
    ValidationError,
)
from timeto.models.documents import (
    Organization,
    OrganizationSettings,
    decode_organization,
    utc_now,
)
from timeto.storage.collections import COLLECTION_ORGANIZATIONS, organization_path, user_path
from timeto.storage.document_store import DELETE_FIELD, deep_merge, new_document_id
from timeto.types import OrgRole

if TYPE_CHECKING:
    from timeto.storage.document_store import DocumentStore
    from timeto.tenancy.context import TenancySession
    from timeto.tenancy.session import TenancySessionManager

logger = structlog.get_logger(__name__)

MAX_NAME_LENGTH = 120

# Stored fields a patch may never touch
_PROTECTED_FIELDS = frozenset(
    {"id", "ownerId", "members", "nameLower", "createdAt", "updatedAt", "parentId"}
)


class CreateOrganizationData(BaseModel):
    name: str
    description: str = ""
    logo: str = ""
    parent_id: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


def _clean_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        msg = "Organization name is required"
        raise ValidationError(msg)
    cleaned = name.strip()
    if len(cleaned) > MAX_NAME_LENGTH:
        msg = f"Organization name must be at most {MAX_NAME_LENGTH} characters"
        raise ValidationError(msg)
    return cleaned


class OrganizationLifecycle:
    """Creates, updates and deletes organizations for a session."""

    def __init__(
        self,
        store: DocumentStore,
        sessions: TenancySessionManager,
        creation_cooldown_seconds: float = 1.0,
        on_roles_changed: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._cooldown = creation_cooldown_seconds
        self._on_roles_changed = on_roles_changed

    @property
    def _session(self) -> TenancySession:
        return self._sessions.session

    async def is_name_available(self, name: str) -> bool:
        """Case-insensitive check against every organization's ``nameLower``."""
        name_lower = _clean_name(name).lower()
        matches = await self._store.query(COLLECTION_ORGANIZATIONS, "nameLower", "==", name_lower)
        return not matches

    async def create_organization(self, data: CreateOrganizationData) -> Organization:
        session = self._session
        user_id = session.require_user()
        resolver = session.resolver

        if data.parent_id:
            if not resolver.can_create_sub_organization(data.parent_id):
                msg = f"Cannot create a sub-organization under {data.parent_id}"
                raise AuthorizationDenied(msg)
        elif not resolver.can_create_organization():
            msg = "Not allowed to create organizations"
            raise AuthorizationDenied(msg)
        name = _clean_name(data.name)

        if session.is_creating:
            msg = "Organization creation already in progress"
            raise CreationInProgress(msg)
        session.is_creating = True
        try:
            return await self._create(session, user_id, name, data)
        finally:
            self._release_creation_latch(session)

    def _release_creation_latch(self, session: TenancySession) -> None:
        def release() -> None:
            session.is_creating = False

        if self._cooldown <= 0:
            release()
            return
        asyncio.get_running_loop().call_later(self._cooldown, release)

    async def _create(
        self, session: TenancySession, user_id: str, name: str, data: CreateOrganizationData
    ) -> Organization:
        if not await self.is_name_available(name):
            msg = f"An organization named {name!r} already exists"
            raise ValidationError(msg)
        if data.parent_id and await self._store.get(organization_path(data.parent_id)) is None:
            raise NotFound("Organization", data.parent_id)

        settings = OrganizationSettings().to_document()
        settings.update(data.settings)
        now = utc_now()
        org = Organization(
            id=new_document_id(),
            name=name,
            name_lower=name.lower(),
            owner_id=user_id,
            description=data.description,
            logo=data.logo,
            parent_id=data.parent_id,
            members={user_id: OrgRole.OWNER},
            created_at=now,
            updated_at=now,
        )
        document = org.to_document()
        document["settings"] = deep_merge(document["settings"], settings)
        await self._store.set(organization_path(org.id), document)
        logger.info("organization_created", org_id=org.id, owner_id=user_id, name=name)

        try:
            await self._store.set(
                user_path(user_id), {"organizations": {org.id: OrgRole.OWNER.value}}, merge=True
            )
        except TransientStoreError:
            logger.error("organization_owner_mirror_failed", org_id=org.id, user_id=user_id)
            raise

        stored = await self._store.get(organization_path(org.id))
        created = decode_organization(stored) if stored else org
        session.set_role(created.id, OrgRole.OWNER)
        session.upsert_organization(created)
        session.current_organization = created
        session.skip_next_reload = True
        await self._sessions.persist_current()
        return created

    async def update_organization(self, org_id: str, patch: dict[str, Any]) -> Organization:
        """Deep-merge ``patch`` onto the stored organization (last writer wins)."""
        session = self._session
        session.require_user()
        if not session.resolver.can_manage_organization(org_id):
            msg = f"Only owners and admins can update organization {org_id}"
            raise AuthorizationDenied(msg)
        protected = sorted(_PROTECTED_FIELDS.intersection(patch))
        if protected:
            msg = f"Fields cannot be changed: {', '.join(protected)}"
            raise ValidationError(msg)
        if "name" in patch:
            patch = {**patch, "name": _clean_name(patch["name"])}

        doc = await self._store.get(organization_path(org_id))
        if doc is None:
            raise NotFound("Organization", org_id)

        merged = deep_merge(doc.data, patch)
        if "name" in patch and patch["name"] != doc.data.get("name"):
            merged["nameLower"] = patch["name"].lower()
        merged["updatedAt"] = utc_now().isoformat()
        await self._store.set(organization_path(org_id), merged)
        logger.info("organization_updated", org_id=org_id, fields=sorted(patch))

        refreshed = await self._sessions.refresh_organization(org_id)
        if refreshed is None:
            raise NotFound("Organization", org_id)
        return refreshed

    async def delete_organization(self, org_id: str) -> None:
        session = self._session
        user_id = session.require_user()
        if not session.resolver.can_delete_organization(org_id):
            msg = f"Only the owner can delete organization {org_id}"
            raise AuthorizationDenied(msg)
        doc = await self._store.get(organization_path(org_id))
        if doc is None:
            raise NotFound("Organization", org_id)
        members = decode_organization(doc).members

        await self._store.delete(organization_path(org_id))
        try:
            await self._store.update(user_path(user_id), {f"organizations.{org_id}": DELETE_FIELD})
        except NotFound:
            logger.warning("organization_owner_document_missing", org_id=org_id, user_id=user_id)
        logger.info("organization_deleted", org_id=org_id, user_id=user_id)
        logger.warning("organization_children_orphaned", org_id=org_id)
        if self._on_roles_changed is not None:
            for member_id in members:
                if member_id != user_id:
                    self._on_roles_changed(member_id)

        was_current = session.current_organization is not None and (
            session.current_organization.id == org_id
        )
        session.set_role(org_id, None)
        session.remove_organization(org_id)
        if was_current:
            await self._sessions.persist_current()
