"""Local calendar events: authoring, listing and export."""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel
import structlog

from calsync.dependencies import get_sync_database, get_sync_service
from calsync.middleware.auth import get_current_user_id
from calsync.models.calendar_sync import LocalEvent, LocalEventCreate, SyncSummary
from calsync.services.calendar_export import build_calendar_links, build_ics, ics_filename
from calsync.services.calendar_sync_service import CalendarSyncService
from calsync.services.sync_database import SyncDatabase

logger = structlog.get_logger()

router = APIRouter(prefix="/api/calendar/events", tags=["Events"])


class EventCreatedResponse(BaseModel):
    event: LocalEvent
    sync: Optional[SyncSummary] = None


class EventListResponse(BaseModel):
    events: List[LocalEvent]


async def _get_event_or_404(store: SyncDatabase, user_id: str, event_id: str) -> LocalEvent:
    event = await store.get_event(user_id, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@router.post("", response_model=EventCreatedResponse, status_code=201)
async def create_event(
    body: LocalEventCreate,
    user_id: str = Depends(get_current_user_id),
    sync_service: CalendarSyncService = Depends(get_sync_service)
):
    """
    Create a local event.

    When the user has connected calendars the event is pushed to them
    immediately and the scoped sync summary is returned alongside it.
    """
    event, summary = await sync_service.create_event(user_id, body)
    logger.info("event_created",
               user_id=user_id,
               event_id=event.id,
               synced=summary is not None)
    return EventCreatedResponse(event=event, sync=summary)


@router.get("", response_model=EventListResponse)
async def list_events(
    user_id: str = Depends(get_current_user_id),
    store: SyncDatabase = Depends(get_sync_database)
):
    """All of the user's events, local and imported, by start time."""
    return EventListResponse(events=await store.list_user_events(user_id))


@router.get("/{event_id}/ics")
async def download_ics(
    event_id: str,
    user_id: str = Depends(get_current_user_id),
    store: SyncDatabase = Depends(get_sync_database)
):
    """Single-event .ics file (Apple Calendar and other importers)."""
    event = await _get_event_or_404(store, user_id, event_id)
    return Response(
        content=build_ics(event),
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{ics_filename(event.title)}"'}
    )


@router.get("/{event_id}/links", response_model=Dict[str, str])
async def calendar_links(
    event_id: str,
    user_id: str = Depends(get_current_user_id),
    store: SyncDatabase = Depends(get_sync_database)
):
    """Add-to-calendar links for Google Calendar and Outlook on the web."""
    event = await _get_event_or_404(store, user_id, event_id)
    return build_calendar_links(event)
