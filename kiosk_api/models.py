"""Pydantic request and response models for API endpoints."""

from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from kiosk_backend.event_storage import RECURRING_MARKER
from kiosk_backend.models import Calendar, CalendarSource, EventOccurrence
from kiosk_backend.timezone_utils import isoformat_z


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    code: str
    details: list[str] = []


class ErrorCodes:
    """Error code constants."""

    INVALID_REQUEST = "INVALID_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str  # "healthy" or "unhealthy"
    version: str
    timestamp: str  # ISO 8601 UTC
    database: str  # "ok" or the error
    error: Optional[str] = None


# ==================== Sources ====================


class CalendarIn(CamelModel):
    id: Optional[str] = None
    name: Optional[str] = None
    calendar_url: Optional[str] = None
    url: Optional[str] = None
    color: Optional[str] = None
    enabled: Optional[bool] = None


class SourceIn(CamelModel):
    """Create or update payload; on update only the fields sent are changed."""

    id: Optional[str] = None
    name: Optional[str] = None
    url: Optional[str] = None
    server_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    source_type: Optional[str] = None
    requires_auth: Optional[bool] = None
    is_public: Optional[bool] = None
    enabled: Optional[bool] = None
    calendars: Optional[list[CalendarIn]] = None

    def to_registry_data(self) -> dict:
        return self.model_dump(exclude_none=True)


class SourceBatchRequest(BaseModel):
    sources: list[SourceIn]


class CalendarOut(CamelModel):
    id: str
    source_id: str
    name: str
    calendar_url: str
    color: str
    enabled: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_calendar(cls, calendar: Calendar) -> "CalendarOut":
        return cls(
            id=calendar.id,
            source_id=calendar.source_id,
            name=calendar.name,
            calendar_url=calendar.calendar_url,
            color=calendar.color,
            enabled=calendar.enabled,
            created_at=isoformat_z(calendar.created_at),
            updated_at=isoformat_z(calendar.updated_at),
        )


class SourceOut(CamelModel):
    """A source as reported to clients; the password itself is never sent."""

    id: str
    name: str
    url: str
    server_url: str
    username: str
    source_type: str
    requires_auth: bool
    is_public: bool
    enabled: bool
    is_active: bool
    has_password: bool
    calendars: list[CalendarOut]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_source(cls, source: CalendarSource) -> "SourceOut":
        return cls(
            id=source.id,
            name=source.name,
            url=source.url,
            server_url=source.url,
            username=source.username,
            source_type=source.source_type,
            requires_auth=source.requires_auth,
            is_public=source.is_public,
            enabled=source.enabled,
            is_active=source.is_active,
            has_password=bool(source.password),
            calendars=[CalendarOut.from_calendar(c) for c in source.calendars],
            created_at=isoformat_z(source.created_at),
            updated_at=isoformat_z(source.updated_at),
        )


class BatchError(BaseModel):
    error: str


class SourceBatchResponse(BaseModel):
    success: bool
    results: list[SourceOut | BatchError]
    count: int


class DeleteResponse(BaseModel):
    success: bool
    message: str


# ==================== Events ====================


class EventOut(CamelModel):
    id: str
    source_id: str
    calendar_id: str
    calendar_name: str
    title: str
    description: str
    location: str
    start: str
    end: str
    timezone: Optional[str] = None
    recurrence_rule: Optional[str] = None
    all_day: bool
    color: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_occurrence(cls, occurrence: EventOccurrence) -> "EventOut":
        return cls(
            id=occurrence.id,
            source_id=occurrence.source_id,
            calendar_id=occurrence.calendar_id,
            calendar_name=occurrence.calendar_name,
            title=occurrence.title,
            description=occurrence.description,
            location=occurrence.location,
            start=isoformat_z(occurrence.start),
            end=isoformat_z(occurrence.end),
            timezone=occurrence.timezone,
            recurrence_rule=RECURRING_MARKER if occurrence.is_recurring else None,
            all_day=occurrence.all_day,
            color=occurrence.color,
            created_at=isoformat_z(occurrence.created_at),
            updated_at=isoformat_z(occurrence.updated_at),
        )


class CountResponse(BaseModel):
    count: int


# ==================== Sync ====================


class SyncTriggerRequest(CamelModel):
    source_id: Optional[str] = None


class SyncResultOut(CamelModel):
    source_id: str
    success: bool
    count: int
    error: Optional[str] = None
    skipped: bool = False


class SyncTriggerResponse(BaseModel):
    success: bool
    message: str
    results: list[SyncResultOut]


class SyncMetadataOut(CamelModel):
    source_id: str
    last_sync_time: Optional[str] = None
    last_sync_status: str
    last_error: Optional[str] = None
    retry_count: int
    next_retry_time: Optional[str] = None
    sync_token: Optional[str] = None
    ctag: Optional[str] = None
    phase: Optional[str] = None


class ResetRetryResponse(BaseModel):
    success: bool
    message: str
    metadata: SyncMetadataOut
