import pytest

from timeto.tenancy.roles import RoleResolver, RoleSnapshot
from timeto.types import OrgRole, SystemRole


def _resolver(
    organizations: dict[str, OrgRole] | None = None,
    system_role: SystemRole = SystemRole.USER,
) -> RoleResolver:
    return RoleResolver(
        RoleSnapshot(user_id="u1", system_role=system_role, organizations=organizations or {})
    )


@pytest.mark.unit
class TestRoleResolverUnloaded:
    def test_every_predicate_is_false(self) -> None:
        resolver = RoleResolver()
        assert resolver.loaded is False
        assert resolver.get_current_user_role("org-1") is None
        assert resolver.is_system_admin() is False
        assert resolver.can_create_organization() is False
        assert resolver.can_create_sub_organization("org-1") is False
        assert resolver.can_manage_organization("org-1") is False
        assert resolver.can_delete_organization("org-1") is False
        assert resolver.can_view_organization("org-1") is False


@pytest.mark.unit
class TestRoleResolver:
    def test_current_role_lookup(self) -> None:
        resolver = _resolver({"org-1": OrgRole.ADMIN})
        assert resolver.get_current_user_role("org-1") == OrgRole.ADMIN
        assert resolver.get_current_user_role("org-2") is None

    def test_baseline_user_can_create_organization(self) -> None:
        assert _resolver().can_create_organization() is True

    def test_system_admin_can_create_sub_organization_anywhere(self) -> None:
        resolver = _resolver(system_role=SystemRole.SYSTEM_ADMIN)
        assert resolver.is_system_admin() is True
        assert resolver.can_create_sub_organization("not-a-member-of") is True

    @pytest.mark.parametrize("role", [OrgRole.OWNER, OrgRole.ADMIN])
    def test_managers_can_create_sub_organization(self, role: OrgRole) -> None:
        assert _resolver({"parent": role}).can_create_sub_organization("parent") is True

    def test_plain_member_cannot_create_sub_organization(self) -> None:
        assert _resolver({"parent": OrgRole.MEMBER}).can_create_sub_organization("parent") is False

    def test_non_member_cannot_create_sub_organization(self) -> None:
        assert _resolver({"other": OrgRole.OWNER}).can_create_sub_organization("parent") is False

    def test_only_owner_can_delete(self) -> None:
        resolver = _resolver({"a": OrgRole.OWNER, "b": OrgRole.ADMIN})
        assert resolver.can_delete_organization("a") is True
        assert resolver.can_delete_organization("b") is False
        assert resolver.can_manage_organization("b") is True

    def test_any_role_can_view(self) -> None:
        resolver = _resolver({"a": OrgRole.MEMBER})
        assert resolver.can_view_organization("a") is True
        assert resolver.can_view_organization("b") is False
