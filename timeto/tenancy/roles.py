"""Pure role policy over an in-memory role snapshot.

The resolver never performs I/O. Until a snapshot is loaded every predicate
answers ``False`` (or ``None`` for role lookups) rather than raising or
assuming access.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from timeto.types import MANAGER_ROLES, OrgRole, SystemRole


@dataclass(slots=True)
class RoleSnapshot:
    """The signed-in user's roles as loaded from ``users/{uid}``.

    ``organizations`` is mutable so membership changes made by this session
    show up without a full reload.
    """

    user_id: str
    system_role: SystemRole = SystemRole.USER
    organizations: dict[str, OrgRole] = field(default_factory=dict)


class RoleResolver:
    """Answers authorization questions for one session."""

    def __init__(self, snapshot: RoleSnapshot | None = None) -> None:
        self._snapshot = snapshot

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def get_current_user_role(self, org_id: str) -> OrgRole | None:
        if self._snapshot is None:
            return None
        return self._snapshot.organizations.get(org_id)

    def is_system_admin(self) -> bool:
        return self._snapshot is not None and self._snapshot.system_role == SystemRole.SYSTEM_ADMIN

    def can_create_organization(self) -> bool:
        # The baseline tier may create
        if self._snapshot is None:
            return False
        return self.is_system_admin() or self._snapshot.system_role == SystemRole.USER

    def can_create_sub_organization(self, parent_org_id: str) -> bool:
        return self.is_system_admin() or self.get_current_user_role(parent_org_id) in MANAGER_ROLES

    def can_manage_organization(self, org_id: str) -> bool:
        """Owners and admins of the org, or system admins, may edit it and its members."""
        return self.is_system_admin() or self.get_current_user_role(org_id) in MANAGER_ROLES

    def can_delete_organization(self, org_id: str) -> bool:
        return self.is_system_admin() or self.get_current_user_role(org_id) == OrgRole.OWNER

    def can_view_organization(self, org_id: str) -> bool:
        return self.is_system_admin() or self.get_current_user_role(org_id) is not None
