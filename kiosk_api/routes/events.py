"""Read-only endpoints over the event cache."""

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from kiosk_backend.event_storage import EventStorageBackend
from kiosk_backend.timezone_utils import parse_iso_instant

from ..dependencies import bad_request, get_storage, not_found
from ..models import CountResponse, EventOut

router = APIRouter(prefix="/api/events", tags=["events"])


def parse_instant(name: str, value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 query parameter."""
    if not value:
        return None
    try:
        return parse_iso_instant(value)
    except ValueError:
        raise bad_request(f"Invalid {name} date", f"Expected ISO-8601, got: {value}")


@router.get("", response_model=list[EventOut])
@router.get("/", response_model=list[EventOut], include_in_schema=False)
def list_events(
    storage: Annotated[EventStorageBackend, Depends(get_storage)],
    source_id: Annotated[Optional[str], Query(alias="sourceId")] = None,
    calendar_id: Annotated[Optional[str], Query(alias="calendarId")] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
):
    """
    Occurrences overlapping [start, end], ordered by start.

    Query parameters:
    - sourceId: Filter by calendar source ID
    - calendarId: Filter by calendar ID
    - start: ISO date string for range start
    - end: ISO date string for range end
    """
    occurrences = storage.query_events(
        source_id=source_id,
        calendar_id=calendar_id,
        start=parse_instant("start", start),
        end=parse_instant("end", end),
    )
    return [EventOut.from_occurrence(occurrence) for occurrence in occurrences]


@router.get("/count", response_model=CountResponse)
def count_events(
    storage: Annotated[EventStorageBackend, Depends(get_storage)],
    source_id: Annotated[Optional[str], Query(alias="sourceId")] = None,
):
    return CountResponse(count=storage.count_events(source_id))


@router.get("/{event_id}", response_model=EventOut)
def get_event(
    event_id: str,
    storage: Annotated[EventStorageBackend, Depends(get_storage)],
):
    occurrence = storage.get_event(event_id)
    if occurrence is None:
        raise not_found("Event not found", f"No event found with ID: {event_id}")
    return EventOut.from_occurrence(occurrence)
