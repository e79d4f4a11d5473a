"""Tenancy session manager: role snapshot, visible organizations, current org.

State machine::

    UNINITIALIZED -> LOADING_ROLES -> LOADING_ORGANIZATIONS -> READY
    READY -> SWITCHING_ORG -> READY
    READY -> ERROR

Loading failures move the session to ERROR with ``session.error`` set and
leave whatever state the session already held untouched.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from timeto.exceptions import (
    AuthorizationDenied,
    ConsistencyWarning,
    NotFound,
    TimetoError,
    TransientStoreError,
)
from timeto.models.documents import (
    Organization,
    User,
    decode_member,
    decode_organization,
    decode_organization_snapshot,
    decode_user,
    utc_now,
)
from timeto.storage.collections import (
    COLLECTION_EVENTS,
    COLLECTION_ORGANIZATIONS,
    current_org_key,
    last_org_key,
    member_path,
    organization_path,
    user_path,
)
from timeto.tenancy.context import TenancySession
from timeto.tenancy.roles import RoleResolver, RoleSnapshot
from timeto.types import OrgRole, SessionState

if TYPE_CHECKING:
    from timeto.storage.document_store import DocumentStore
    from timeto.storage.kv_store import KeyValueStore
    from timeto.tenancy.context import AuthIdentity

logger = structlog.get_logger(__name__)


class TenancySessionManager:
    """Loads and holds tenancy state for one session."""

    def __init__(
        self,
        store: DocumentStore,
        kv_store: KeyValueStore,
        session: TenancySession | None = None,
    ) -> None:
        self._store = store
        self._kv = kv_store
        self.session = session or TenancySession()

    @property
    def current_organization(self) -> Organization | None:
        return self.session.current_organization

    @property
    def user_organizations(self) -> list[Organization]:
        return list(self.session.organizations)

    @property
    def state(self) -> SessionState:
        return self.session.state

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def sign_in(self, identity: AuthIdentity) -> None:
        """Bind the session to a user and load roles and organizations."""
        self.session.identity = identity
        logger.info("session_sign_in", user_id=identity.uid)
        await self._load()

    async def sign_out(self) -> None:
        logger.info("session_sign_out", user_id=self.session.user_id)
        self.session.reset()

    async def reload(self) -> None:
        """Automatic reload trigger.

        The first reload after an organization was created is skipped, so the
        new organization is not evicted before the store can return it from
        a query.
        """
        if self.session.skip_next_reload:
            self.session.skip_next_reload = False
            logger.info("session_reload_skipped", user_id=self.session.user_id)
            return
        if self.session.identity is None:
            return
        await self._load()

    async def _load(self) -> None:
        session = self.session
        identity = session.identity
        if identity is None:
            return

        session.state = SessionState.LOADING_ROLES
        try:
            user = await self._load_or_create_user(identity)
        except TimetoError as exc:
            self._fail("Failed to load roles", exc)
            return
        roles = RoleSnapshot(
            user_id=user.id,
            system_role=user.system_role,
            organizations=dict(user.organizations),
        )

        session.state = SessionState.LOADING_ORGANIZATIONS
        try:
            organizations = await self._load_visible_organizations(user, roles)
            warnings = await self._reconcile_role_mirror(user, roles, organizations)
        except TimetoError as exc:
            self._fail("Failed to load organizations", exc)
            return
        organizations = await self._with_event_counts(organizations)

        session.roles = roles
        session.organizations = organizations
        session.consistency_warnings = warnings
        session.current_organization = await self._restore_current(organizations)
        session.error = None
        session.state = SessionState.READY
        logger.info(
            "session_ready",
            user_id=user.id,
            organizations=len(organizations),
            current_org_id=getattr(session.current_organization, "id", None),
        )

    def _fail(self, message: str, exc: Exception) -> None:
        self.session.state = SessionState.ERROR
        self.session.error = message
        logger.error("session_load_failed", user_id=self.session.user_id, error=str(exc))

    async def _load_or_create_user(self, identity: AuthIdentity) -> User:
        doc = await self._store.get(user_path(identity.uid))
        if doc is not None:
            return decode_user(doc)

        now = utc_now()
        user = User(id=identity.uid, email=identity.email, created_at=now, updated_at=now)
        if identity.display_name:
            first, _, last = identity.display_name.partition(" ")
            user = user.model_copy(update={"first_name": first, "last_name": last})
        await self._store.set(user_path(identity.uid), user.to_document())
        logger.info("user_document_created", user_id=identity.uid)
        return user

    async def _load_visible_organizations(
        self, user: User, roles: RoleSnapshot
    ) -> list[Organization]:
        if RoleResolver(roles).is_system_admin():
            docs = await self._store.list(COLLECTION_ORGANIZATIONS)
        else:
            # The members map is what makes an organization visible to its users
            docs = await self._store.query(
                COLLECTION_ORGANIZATIONS,
                f"members.{user.id}",
                "in",
                [role.value for role in OrgRole],
            )
        return [decode_organization(doc) for doc in docs]

    async def _reconcile_role_mirror(
        self, user: User, roles: RoleSnapshot, organizations: list[Organization]
    ) -> list[ConsistencyWarning]:
        """Compare the user's role mirror with each organization's members map.

        On disagreement the ``members/{uid}`` subdocument decides, falling
        back to the members map when the subdocument is missing or partial.
        """
        warnings: list[ConsistencyWarning] = []
        for org in organizations:
            map_role = org.members.get(user.id)
            mirror_role = user.organizations.get(org.id)
            if map_role is None or map_role == mirror_role:
                continue
            member_doc = await self._store.get(member_path(org.id, user.id))
            member = decode_member(member_doc) if member_doc else None
            role = member.role if member and not member.incomplete else map_role
            roles.organizations[org.id] = role
            warning = ConsistencyWarning(
                f"Role mirror for organization {org.id} was {mirror_role}, expected {role}",
                user_id=user.id,
                org_id=org.id,
            )
            warnings.append(warning)
            logger.warning(
                "membership_mirror_diverged",
                user_id=user.id,
                org_id=org.id,
                mirror_role=mirror_role,
                members_map_role=map_role,
                resolved_role=role,
            )
        return warnings

    async def _with_event_counts(self, organizations: list[Organization]) -> list[Organization]:
        counts = await asyncio.gather(*(self._count_events(org.id) for org in organizations))
        return [
            org.model_copy(update={"event_count": count})
            for org, count in zip(organizations, counts, strict=True)
        ]

    async def _count_events(self, org_id: str) -> int:
        try:
            events = await self._store.query(COLLECTION_EVENTS, "organizationId", "==", org_id)
        except TransientStoreError as exc:
            logger.warning("event_count_failed", org_id=org_id, error=str(exc))
            return 0
        return len(events)

    async def _restore_current(self, organizations: list[Organization]) -> Organization | None:
        """Pick the current organization.

        Priority: cached snapshot, then ``lastOrg`` id, then the first
        organization, then None.
        """
        user_id = self.session.require_user()
        by_id = {org.id: org for org in organizations}

        cached = decode_organization_snapshot(await self._kv_get(current_org_key(user_id)))
        if cached is not None:
            if cached.id in by_id:
                return by_id[cached.id]
            # A just-created organization may not be queryable yet
            if self.session.resolver.can_view_organization(cached.id):
                return cached
            logger.info("cached_organization_dropped", user_id=user_id, org_id=cached.id)

        last_org_id = await self._kv_get(last_org_key(user_id))
        if isinstance(last_org_id, str) and last_org_id in by_id:
            return by_id[last_org_id]

        return organizations[0] if organizations else None

    async def _kv_get(self, key: str) -> object | None:
        try:
            return await self._kv.get(key)
        except TransientStoreError as exc:
            logger.warning("session_value_read_failed", key=key, error=str(exc))
            return None

    # ------------------------------------------------------------------
    # Current organization
    # ------------------------------------------------------------------

    async def switch_organization(self, org_id: str) -> Organization:
        """Make ``org_id`` current, always from a fresh read of the store.

        Concurrent switches are ordered by a request sequence: only the most
        recently started call may change the session.
        """
        session = self.session
        session.require_user()
        session.switch_sequence += 1
        sequence = session.switch_sequence
        previous_state = session.state
        if previous_state == SessionState.SWITCHING_ORG:
            # Overlapping switch; the earlier one will be superseded
            previous_state = SessionState.READY
        session.state = SessionState.SWITCHING_ORG

        try:
            org = await self._fetch_organization(org_id)
            if not self._can_view(org):
                msg = f"Not a member of organization {org_id}"
                raise AuthorizationDenied(msg)
        except TransientStoreError as exc:
            if sequence == session.switch_sequence:
                session.state = SessionState.ERROR
                session.error = "Failed to switch organization"
            logger.error("organization_switch_failed", org_id=org_id, error=str(exc))
            raise
        except TimetoError:
            if sequence == session.switch_sequence:
                session.state = previous_state
            raise

        if sequence != session.switch_sequence:
            logger.info("organization_switch_superseded", org_id=org_id, sequence=sequence)
            return org

        session.upsert_organization(org)
        session.current_organization = org
        session.error = None
        session.state = SessionState.READY
        await self.persist_current()
        logger.info("organization_switched", user_id=session.user_id, org_id=org_id)
        return org

    async def refresh_organization(self, org_id: str) -> Organization | None:
        """Re-read one organization into the session; None if it no longer exists."""
        session = self.session
        doc = await self._store.get(organization_path(org_id))
        current = session.current_organization
        was_current = current is not None and current.id == org_id
        if doc is None:
            session.remove_organization(org_id)
            logger.info("organization_refresh_removed", org_id=org_id)
            if was_current:
                await self.persist_current()
            return None

        org = self._with_known_count(decode_organization(doc))
        session.upsert_organization(org)
        if was_current:
            await self.persist_current()
        return org

    async def _fetch_organization(self, org_id: str) -> Organization:
        doc = await self._store.get(organization_path(org_id))
        if doc is None:
            raise NotFound("Organization", org_id)
        return self._with_known_count(decode_organization(doc))

    def _with_known_count(self, org: Organization) -> Organization:
        known = self.session.find_organization(org.id)
        if known is None:
            return org
        return org.model_copy(update={"event_count": known.event_count})

    def _can_view(self, org: Organization) -> bool:
        user_id = self.session.user_id
        return self.session.resolver.can_view_organization(org.id) or (
            user_id is not None and user_id in org.members
        )

    async def persist_current(self) -> None:
        """Write lastOrg/currentOrg for the session user; failures are logged only."""
        user_id = self.session.require_user()
        current = self.session.current_organization
        try:
            if current is None:
                await self._kv.delete(last_org_key(user_id))
                await self._kv.delete(current_org_key(user_id))
            else:
                await self._kv.set(last_org_key(user_id), current.id)
                await self._kv.set(current_org_key(user_id), current.to_snapshot())
        except TransientStoreError as exc:
            logger.warning("current_organization_persist_failed", user_id=user_id, error=str(exc))

