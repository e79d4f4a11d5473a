"""Event API routes."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from timeto.events.service import CreateEventData, EventService, UpdateEventData
from timeto.web.dependencies import TenancyServices, get_event_service, get_services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("")
async def list_events(
    organization_id: str = Query(min_length=1),
    events: EventService = Depends(get_event_service),
) -> list[dict[str, Any]]:
    return [event.model_dump(mode="json") for event in await events.list_events(organization_id)]


@router.post("", status_code=201)
async def create_event(
    body: CreateEventData,
    events: EventService = Depends(get_event_service),
) -> dict[str, Any]:
    event = await events.create_event(body)
    return event.model_dump(mode="json")


@router.get("/{event_id}")
async def get_event(
    event_id: str,
    events: EventService = Depends(get_event_service),
) -> dict[str, Any]:
    event = await events.get_event(event_id)
    return event.model_dump(mode="json")


@router.patch("/{event_id}")
async def update_event(
    event_id: str,
    body: UpdateEventData,
    events: EventService = Depends(get_event_service),
) -> dict[str, Any]:
    event = await events.update_event(event_id, body)
    return event.model_dump(mode="json")


@router.delete("/{event_id}")
async def delete_event(
    event_id: str,
    events: EventService = Depends(get_event_service),
) -> Response:
    await events.delete_event(event_id)
    return Response(status_code=204)


@router.get("/{event_id}/notifications")
async def list_event_notifications(
    event_id: str,
    events: EventService = Depends(get_event_service),
    services: TenancyServices = Depends(get_services),
) -> list[dict[str, Any]]:
    await events.get_event(event_id)
    notifications = await services.scheduler.list_for(event_id)
    return [
        notification.model_dump(mode="json")
        for notification in sorted(notifications, key=lambda n: n.time_before_event)
    ]
