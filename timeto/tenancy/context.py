"""Per-session tenancy context threaded through every tenancy-aware call."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from timeto.exceptions import AuthenticationRequired
from timeto.tenancy.roles import RoleResolver, RoleSnapshot
from timeto.types import SessionState

if TYPE_CHECKING:
    from timeto.exceptions import ConsistencyWarning
    from timeto.models.documents import Organization
    from timeto.types import OrgRole


@dataclass(frozen=True, slots=True)
class AuthIdentity:
    """What the authentication provider tells us about the signed-in user."""

    uid: str
    email: str = ""
    display_name: str = ""


@dataclass(slots=True)
class TenancySession:
    """Mutable state of one signed-in session.

    Holds the role snapshot, the visible organizations and the current
    organization. Several sessions can coexist in one process.
    """

    identity: AuthIdentity | None = None
    state: SessionState = SessionState.UNINITIALIZED
    roles: RoleSnapshot | None = None
    organizations: list[Organization] = field(default_factory=list)
    current_organization: Organization | None = None
    error: str | None = None
    consistency_warnings: list[ConsistencyWarning] = field(default_factory=list)
    skip_next_reload: bool = False
    is_creating: bool = False
    switch_sequence: int = 0

    @property
    def user_id(self) -> str | None:
        return self.identity.uid if self.identity else None

    @property
    def resolver(self) -> RoleResolver:
        return RoleResolver(self.roles)

    def require_user(self) -> str:
        """Return the signed-in user id or raise AuthenticationRequired."""
        if self.identity is None:
            msg = "Sign in required"
            raise AuthenticationRequired(msg)
        return self.identity.uid

    def find_organization(self, org_id: str) -> Organization | None:
        return next((org for org in self.organizations if org.id == org_id), None)

    def upsert_organization(self, org: Organization) -> None:
        """Insert or replace an organization in the visible list, keeping order."""
        for index, existing in enumerate(self.organizations):
            if existing.id == org.id:
                self.organizations[index] = org
                break
        else:
            self.organizations.append(org)
        if self.current_organization and self.current_organization.id == org.id:
            self.current_organization = org

    def remove_organization(self, org_id: str) -> None:
        self.organizations = [org for org in self.organizations if org.id != org_id]
        if self.current_organization and self.current_organization.id == org_id:
            self.current_organization = self.organizations[0] if self.organizations else None

    def set_role(self, org_id: str, role: OrgRole | None) -> None:
        """Mirror a role change for the signed-in user into the snapshot."""
        if self.roles is None:
            return
        if role is None:
            self.roles.organizations.pop(org_id, None)
        else:
            self.roles.organizations[org_id] = role

    def set_member_role(self, org_id: str, user_id: str, role: OrgRole | None) -> None:
        """Apply a membership change to the cached copies of an organization."""
        org = self.find_organization(org_id)
        if org is None and self.current_organization and self.current_organization.id == org_id:
            org = self.current_organization
        if org is not None:
            members = dict(org.members)
            if role is None:
                members.pop(user_id, None)
            else:
                members[user_id] = role
            self.upsert_organization(org.model_copy(update={"members": members}))
        if user_id == self.user_id:
            self.set_role(org_id, role)

    def reset(self) -> None:
        self.identity = None
        self.state = SessionState.UNINITIALIZED
        self.roles = None
        self.organizations = []
        self.current_organization = None
        self.error = None
        self.consistency_warnings = []
        self.skip_next_reload = False
        self.is_creating = False
