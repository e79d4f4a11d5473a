"""Collection names and document path builders.

The document store has no DDL. These constants are the single source of
truth for where each entity lives.
"""

from __future__ import annotations

COLLECTION_USERS = "users"
COLLECTION_ORGANIZATIONS = "organizations"
COLLECTION_EVENTS = "events"
COLLECTION_PUBLIC_EVENTS = "publicEvents"
COLLECTION_SCHEDULED_NOTIFICATIONS = "scheduledNotifications"

# Subcollections of organizations/{orgId}
SUBCOLLECTION_MEMBERS = "members"
SUBCOLLECTION_LEADS = "leads"


def user_path(user_id: str) -> str:
    return f"{COLLECTION_USERS}/{user_id}"


def organization_path(org_id: str) -> str:
    return f"{COLLECTION_ORGANIZATIONS}/{org_id}"


def members_collection(org_id: str) -> str:
    return f"{organization_path(org_id)}/{SUBCOLLECTION_MEMBERS}"


def member_path(org_id: str, user_id: str) -> str:
    return f"{members_collection(org_id)}/{user_id}"


def leads_collection(org_id: str) -> str:
    return f"{organization_path(org_id)}/{SUBCOLLECTION_LEADS}"


def lead_path(org_id: str, lead_id: str) -> str:
    return f"{leads_collection(org_id)}/{lead_id}"


def event_path(event_id: str) -> str:
    return f"{COLLECTION_EVENTS}/{event_id}"


def public_event_path(event_id: str) -> str:
    return f"{COLLECTION_PUBLIC_EVENTS}/{event_id}"


def scheduled_notification_path(notification_id: str) -> str:
    return f"{COLLECTION_SCHEDULED_NOTIFICATIONS}/{notification_id}"


# Session key-value store keys
def last_org_key(user_id: str) -> str:
    return f"lastOrg_{user_id}"


def current_org_key(user_id: str) -> str:
    return f"currentOrg_{user_id}"
