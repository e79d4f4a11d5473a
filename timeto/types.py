"""Enums and type aliases for TimeTo."""

from enum import StrEnum


class SystemRole(StrEnum):
    SYSTEM_ADMIN = "system_admin"
    USER = "user"


class OrgRole(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class MemberStatus(StrEnum):
    ACTIVE = "active"
    PENDING = "pending"


class LeadStatus(StrEnum):
    PENDING = "pending"
    INVITED = "invited"
    TRANSFORMED = "transformed"


class MemberType(StrEnum):
    LEAD = "lead"
    MEMBER = "member"


class SessionState(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADING_ROLES = "loading_roles"
    LOADING_ORGANIZATIONS = "loading_organizations"
    READY = "ready"
    SWITCHING_ORG = "switching_org"
    ERROR = "error"


class EventVisibility(StrEnum):
    PUBLIC = "public"
    ORGANIZATION = "organization"
    PRIVATE = "private"


class ErrorCategory(StrEnum):
    TRY_AGAIN = "try_again"
    NOT_ALLOWED = "not_allowed"
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"


MANAGER_ROLES = frozenset({OrgRole.OWNER, OrgRole.ADMIN})
