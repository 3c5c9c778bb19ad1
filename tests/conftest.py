"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta

import pytest
import pytz

from kiosk_backend import database, timezone_utils
from kiosk_backend.errors import TransportFailure
from kiosk_backend.event_storage import SqliteEventStorage
from kiosk_backend.source_registry import SourceRegistry


FEED_URL = "https://feeds.example.com/family.ics"

SIMPLE_FEED = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//Kiosk Tests//EN
BEGIN:VEVENT
UID:dentist@example.com
DTSTAMP:20241101T000000Z
DTSTART;TZID=America/Chicago:20241115T093000
DTEND;TZID=America/Chicago:20241115T103000
SUMMARY:Dentist
LOCATION:Main St
END:VEVENT
BEGIN:VEVENT
UID:soccer@example.com
DTSTAMP:20241101T000000Z
DTSTART;TZID=America/Chicago:20241104T170000
DTEND;TZID=America/Chicago:20241104T180000
RRULE:FREQ=WEEKLY;COUNT=3
SUMMARY:Soccer practice
END:VEVENT
END:VCALENDAR
"""


class FakeClock:
    """Settable clock; call it to read the current instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeFeeds:
    """Stands in for fetch_ics: serves registered bodies, fails registered URLs."""

    def __init__(self):
        self.bodies: dict[str, str] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple] = []

    def __call__(self, url, auth=None, timeout=None):
        self.calls.append((url, auth, timeout))
        if url in self.failing:
            raise TransportFailure(url, "HTTP 503: Service Unavailable", status=503)
        return self.bodies[url]


@pytest.fixture(autouse=True)
def default_timezone():
    timezone_utils.set_default_timezone("America/Chicago")
    yield
    timezone_utils.set_default_timezone(timezone_utils.DEFAULT_TIMEZONE)


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "calendar.db"
    database.init_database(path)
    return path


@pytest.fixture
def registry(db_path):
    return SourceRegistry(db_path)


@pytest.fixture
def storage(db_path):
    return SqliteEventStorage(db_path)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 11, 10, 12, 0, tzinfo=pytz.UTC))


@pytest.fixture
def feeds():
    feeds = FakeFeeds()
    feeds.bodies[FEED_URL] = SIMPLE_FEED
    return feeds


@pytest.fixture
def ics_source(registry):
    """An ICS feed source with a single calendar."""
    return registry.create_source({
        "id": "family",
        "name": "Family",
        "url": FEED_URL,
        "source_type": "ics",
        "requires_auth": False,
        "calendars": [{"id": "family-cal", "name": "Family", "url": FEED_URL, "color": "#ff8800"}],
    })
