"""Event CRUD wired to the notification scheduler.

Organization-visible events live in ``events``; public ones in
``publicEvents``. Visibility is fixed when the event is created.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from timeto.exceptions import AuthorizationDenied, NotFound, ValidationError
from timeto.models.documents import (
    Event,
    NotificationSettings,
    decode_event,
    decode_organization,
    utc_now,
)
from timeto.notifications.scheduler import validate_offsets
from timeto.storage.collections import (
    COLLECTION_EVENTS,
    COLLECTION_PUBLIC_EVENTS,
    event_path,
    organization_path,
    public_event_path,
)
from timeto.storage.document_store import new_document_id
from timeto.types import EventVisibility

if TYPE_CHECKING:
    from timeto.notifications.scheduler import NotificationScheduler
    from timeto.storage.document_store import DocumentStore
    from timeto.tenancy.session import TenancySessionManager

logger = structlog.get_logger(__name__)


class CreateEventData(BaseModel):
    organization_id: str
    title: str
    start: datetime
    end: datetime | None = None
    description: str = ""
    visibility: EventVisibility | None = None
    notification_settings: NotificationSettings | None = None


class UpdateEventData(BaseModel):
    title: str | None = None
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    notification_settings: NotificationSettings | None = None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _check_times(start: datetime, end: datetime | None) -> None:
    if end is not None and end < start:
        msg = "Event end must not be before its start"
        raise ValidationError(msg)


class EventService:
    def __init__(
        self,
        store: DocumentStore,
        sessions: TenancySessionManager,
        scheduler: NotificationScheduler,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._scheduler = scheduler

    def _require_role(self, org_id: str) -> str:
        session = self._sessions.session
        user_id = session.require_user()
        if not session.resolver.can_view_organization(org_id):
            msg = f"Not a member of organization {org_id}"
            raise AuthorizationDenied(msg)
        return user_id

    async def _locate(self, event_id: str) -> tuple[str, Event]:
        for path in (event_path(event_id), public_event_path(event_id)):
            doc = await self._store.get(path)
            if doc is not None:
                return path, decode_event(doc)
        raise NotFound("Event", event_id)

    async def get_event(self, event_id: str) -> Event:
        _, event = await self._locate(event_id)
        if event.visibility != EventVisibility.PUBLIC:
            self._require_role(event.organization_id)
        return event

    async def list_events(self, org_id: str) -> list[Event]:
        self._require_role(org_id)
        docs = [
            *await self._store.query(COLLECTION_EVENTS, "organizationId", "==", org_id),
            *await self._store.query(COLLECTION_PUBLIC_EVENTS, "organizationId", "==", org_id),
        ]
        events = []
        for doc in docs:
            try:
                events.append(decode_event(doc))
            except ValidationError as exc:
                logger.warning("event_skipped", path=doc.path, error=str(exc))
        return sorted(events, key=lambda event: event.start)

    async def create_event(self, data: CreateEventData) -> Event:
        user_id = self._require_role(data.organization_id)
        if not data.title.strip():
            msg = "Event title is required"
            raise ValidationError(msg)
        start = _aware(data.start)
        end = _aware(data.end) if data.end else None
        _check_times(start, end)
        if data.notification_settings is not None:
            validate_offsets(data.notification_settings.reminder_times)

        org_doc = await self._store.get(organization_path(data.organization_id))
        if org_doc is None:
            raise NotFound("Organization", data.organization_id)
        org_settings = decode_organization(org_doc).settings
        visibility = data.visibility or org_settings.default_event_visibility
        if visibility == EventVisibility.PUBLIC and not org_settings.allow_public_events:
            msg = f"Organization {data.organization_id} does not allow public events"
            raise ValidationError(msg)

        now = utc_now()
        event = Event(
            id=new_document_id(),
            organization_id=data.organization_id,
            start=start,
            end=end,
            title=data.title.strip(),
            description=data.description,
            owner=user_id,
            visibility=visibility,
            notification_settings=data.notification_settings,
            created_at=now,
            updated_at=now,
        )
        path = (
            public_event_path(event.id)
            if visibility == EventVisibility.PUBLIC
            else event_path(event.id)
        )
        await self._store.set(path, event.to_document())
        logger.info("event_created", event_id=event.id, org_id=event.organization_id)
        await self._scheduler.schedule_for(event)
        return event

    async def update_event(self, event_id: str, patch: UpdateEventData) -> Event:
        path, event = await self._locate(event_id)
        self._require_role(event.organization_id)
        changes = patch.model_dump(exclude_unset=True)
        if "title" in changes and not (changes["title"] or "").strip():
            msg = "Event title is required"
            raise ValidationError(msg)
        if changes.get("description", "") is None:
            changes.pop("description")
        if changes.get("start") is not None:
            changes["start"] = _aware(changes["start"])
        elif "start" in changes:
            msg = "Event start cannot be removed"
            raise ValidationError(msg)
        if changes.get("end") is not None:
            changes["end"] = _aware(changes["end"])
        if patch.notification_settings is not None:
            changes["notification_settings"] = patch.notification_settings
            validate_offsets(patch.notification_settings.reminder_times)

        if changes.get("title"):
            changes["title"] = changes["title"].strip()
        updated = event.model_copy(update={**changes, "updated_at": utc_now()})
        _check_times(updated.start, updated.end)
        await self._store.set(path, updated.to_document())
        logger.info("event_updated", event_id=event_id, fields=sorted(changes))

        if "notification_settings" in changes or updated.start != event.start:
            settings = updated.notification_settings
            await self._scheduler.reconcile(updated, settings.reminder_times if settings else [])
        return updated

    async def delete_event(self, event_id: str) -> None:
        path, event = await self._locate(event_id)
        self._require_role(event.organization_id)
        await self._store.delete(path)
        cancelled = await self._scheduler.cancel_all(event_id)
        logger.info("event_deleted", event_id=event_id, notifications_cancelled=cancelled)
