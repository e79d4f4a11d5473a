"""Reminder jobs derived from an event's notification settings.

The set of ``scheduledNotifications`` documents for an event is always the
image of its reminder offsets: one document per offset, with
``nextNotification = start - offset minutes``. Updates are diffed so an
unchanged offset keeps its document. Whether ``nextNotification`` is already
in the past is for the dispatcher to judge, not this module.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from timeto.exceptions import ValidationError
from timeto.models.documents import ScheduledNotification, decode_scheduled_notification
from timeto.storage.collections import (
    COLLECTION_SCHEDULED_NOTIFICATIONS,
    scheduled_notification_path,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from timeto.models.documents import Event
    from timeto.storage.document_store import DocumentStore

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class ReconcileResult:
    created: list[int] = field(default_factory=list)
    deleted: list[int] = field(default_factory=list)
    kept: list[int] = field(default_factory=list)
    rescheduled: list[int] = field(default_factory=list)
    # ids of documents that could not be decoded
    discarded: list[str] = field(default_factory=list)


def validate_offsets(reminder_times: Iterable[object]) -> list[int]:
    """Return the offsets in minutes, rejecting negatives, non-integers and duplicates."""
    offsets: list[int] = []
    for value in reminder_times:
        if isinstance(value, bool) or not isinstance(value, int):
            msg = f"Reminder offset must be a whole number of minutes, got {value!r}"
            raise ValidationError(msg)
        if value < 0:
            msg = f"Reminder offset must not be negative, got {value}"
            raise ValidationError(msg)
        if value in offsets:
            msg = f"Duplicate reminder offset: {value}"
            raise ValidationError(msg)
        offsets.append(value)
    return offsets


class NotificationScheduler:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def list_for(self, event_id: str) -> list[ScheduledNotification]:
        docs = await self._store.query(
            COLLECTION_SCHEDULED_NOTIFICATIONS, "eventId", "==", event_id
        )
        decoded = (decode_scheduled_notification(doc) for doc in docs)
        return [notification for notification in decoded if notification is not None]

    async def schedule_for(self, event: Event) -> list[ScheduledNotification]:
        """Create reminder documents for a newly created event."""
        settings = event.notification_settings
        if settings is None or not settings.enabled:
            return []
        offsets = validate_offsets(settings.reminder_times)
        created = [await self._create(event, offset) for offset in offsets]
        logger.info("notifications_scheduled", event_id=event.id, offsets=offsets)
        return created

    async def reconcile(self, event: Event, new_reminder_times: list[int]) -> ReconcileResult:
        """Bring the event's reminder documents in line with ``new_reminder_times``.

        Only added offsets are created and only removed offsets are deleted.
        Documents for unchanged offsets keep their id; if the event start
        moved, their ``nextNotification`` is rewritten in place. Disabled
        notifications reconcile to the empty set. Documents that no longer
        decode are deleted rather than left for the dispatcher.
        """
        wanted = validate_offsets(new_reminder_times) if event.reminders_enabled else []
        result = ReconcileResult()
        existing: dict[int, ScheduledNotification] = {}

        docs = await self._store.query(
            COLLECTION_SCHEDULED_NOTIFICATIONS, "eventId", "==", event.id
        )
        for doc in docs:
            notification = decode_scheduled_notification(doc)
            if notification is None:
                await self._store.delete(doc.path)
                result.discarded.append(doc.id)
                continue
            offset = notification.time_before_event
            if offset in existing or offset not in wanted:
                # Duplicate documents for one offset collapse onto the first
                await self._store.delete(scheduled_notification_path(notification.id))
                result.deleted.append(offset)
                continue
            existing[offset] = notification

        for offset in wanted:
            notification = existing.get(offset)
            if notification is None:
                await self._create(event, offset)
                result.created.append(offset)
                continue
            expected = event.start - timedelta(minutes=offset)
            if notification.next_notification != expected or notification.owner != event.owner:
                await self._store.update(
                    scheduled_notification_path(notification.id),
                    {"nextNotification": expected.isoformat(), "owner": event.owner},
                )
                result.rescheduled.append(offset)
            result.kept.append(offset)

        logger.info(
            "notifications_reconciled",
            event_id=event.id,
            created=result.created,
            deleted=result.deleted,
            kept=result.kept,
            rescheduled=result.rescheduled,
            discarded=result.discarded,
        )
        return result

    async def cancel_all(self, event_id: str) -> int:
        """Delete every reminder document of ``event_id`` and no others."""
        docs = await self._store.query(
            COLLECTION_SCHEDULED_NOTIFICATIONS, "eventId", "==", event_id
        )
        for doc in docs:
            await self._store.delete(doc.path)
        logger.info("notifications_cancelled", event_id=event_id, count=len(docs))
        return len(docs)

    async def _create(self, event: Event, offset: int) -> ScheduledNotification:
        notification = ScheduledNotification(
            id="",
            event_id=event.id,
            owner=event.owner,
            time_before_event=offset,
            next_notification=event.start - timedelta(minutes=offset),
        )
        doc_id = await self._store.add(
            COLLECTION_SCHEDULED_NOTIFICATIONS, notification.to_document()
        )
        return notification.model_copy(update={"id": doc_id})
