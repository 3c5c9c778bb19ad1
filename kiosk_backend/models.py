"""
Data model shared by the registry, the materializer and the event cache.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


SOURCE_TYPE_CALDAV = "caldav"
SOURCE_TYPE_ICS = "ics"

# Accepted spellings for the feed source type
_SOURCE_TYPE_ALIASES = {
    "caldav": SOURCE_TYPE_CALDAV,
    "ics": SOURCE_TYPE_ICS,
    "ics-feed": SOURCE_TYPE_ICS,
    "ics_feed": SOURCE_TYPE_ICS,
}

DEFAULT_CALENDAR_COLOR = "#3788d8"
UNTITLED_EVENT = "Untitled Event"


def normalize_source_type(value: Optional[str]) -> str:
    """Map a configured source type onto its stored form."""
    if not value:
        return SOURCE_TYPE_CALDAV
    try:
        return _SOURCE_TYPE_ALIASES[value.lower()]
    except KeyError:
        raise ValueError(f"Unknown source type: {value}")


@dataclass
class Calendar:
    """A calendar collection belonging to a source."""
    id: str
    source_id: str
    name: str
    calendar_url: str
    color: str = DEFAULT_CALENDAR_COLOR
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CalendarSource:
    """
    A configured remote calendar source (CalDAV server or ICS feed).

    The password is held decrypted in memory only; the database stores the
    encrypted envelope.
    """
    id: str
    name: str
    url: str
    username: str = ""
    password: str = field(default="", repr=False)
    source_type: str = SOURCE_TYPE_CALDAV
    requires_auth: bool = True
    is_public: bool = False
    enabled: bool = True
    is_active: bool = True
    calendars: list[Calendar] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Set when the stored password could not be decrypted
    password_error: Optional[str] = None

    @property
    def auth(self) -> Optional[tuple[str, str]]:
        """Basic auth pair, or None when the source is accessed anonymously."""
        if not self.requires_auth:
            return None
        return (self.username, self.password)

    @property
    def is_caldav(self) -> bool:
        return self.source_type == SOURCE_TYPE_CALDAV


@dataclass
class EventOccurrence:
    """
    One concrete, materialized instance of a calendar event.

    start/end are timezone-aware UTC instants. timezone is the IANA zone the
    occurrence is displayed in and is None for all-day occurrences.
    """
    id: str
    source_id: str
    calendar_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    timezone: Optional[str] = None
    is_recurring: bool = False
    description: str = ""
    location: str = ""
    calendar_name: str = ""
    color: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
