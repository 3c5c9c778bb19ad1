"""
CalDAV client for reading calendars from a CalDAV server.

Thin read-only wrapper around the caldav library: principal discovery,
calendar listing and fetching raw VCALENDAR objects. Library and network
errors surface as TransportFailure.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import unquote, urljoin, urlsplit

import caldav
from caldav.elements import ical
from caldav.lib.error import AuthorizationError, DAVError, NotFoundError, RateLimitError

from .errors import TransportFailure
from .ics_subscription import USER_AGENT


logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3788d8"


@dataclass
class CalendarInfo:
    """Information about a remote CalDAV calendar collection."""
    id: str
    name: str
    color: str
    url: str

    # Internal reference to the caldav.Calendar object
    _caldav_calendar: Optional[caldav.Calendar] = field(default=None, repr=False)


def normalize_url(url: str, base: Optional[str] = None) -> str:
    """
    Canonical form of a collection URL for matching.

    Resolves relative hrefs against base, lowercases scheme and host,
    unquotes the path and drops the trailing slash.
    """
    absolute = urljoin(base, url) if base else url
    parts = urlsplit(absolute)
    path = unquote(parts.path).rstrip("/")
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{path}"


def _calendar_color(cal) -> str:
    props = cal.get_properties([ical.CalendarColor()])
    for value in (props or {}).values():
        if value and isinstance(value, str):
            color = value.strip()
            # Apple clients append an alpha channel (#RRGGBBAA)
            if len(color) == 9 and color.startswith("#"):
                color = color[:7]
            return color
    return DEFAULT_COLOR


def _status_of(error: DAVError) -> Optional[int]:
    if isinstance(error, AuthorizationError):
        return 401
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, RateLimitError):
        return 429
    return None


class CalDAVClient:
    """Read-only client for one CalDAV account."""

    def __init__(self, url: str, username: str = "", password: str = "", timeout: float = 45):
        """
        Initialize the CalDAV client. No request is made until connect().

        Args:
            url: Server or principal URL (e.g. https://cloud.example.com/remote.php/dav)
            username: Account name; leave empty for anonymous access
            password: Password or app token
            timeout: Per-request timeout in seconds
        """
        self.url = url
        self.username = username
        self.password = password
        self.timeout = timeout

        self._client: Optional[caldav.DAVClient] = None
        self._principal: Optional[caldav.Principal] = None

    def _failure(self, action: str, error: Exception, url: Optional[str] = None) -> TransportFailure:
        if isinstance(error, DAVError):
            return TransportFailure(
                url or self.url, f"{action} failed: {error.reason}", status=_status_of(error)
            )
        return TransportFailure(url or self.url, f"{action} failed: {error}")

    # ==================== Discovery ====================

    def connect(self) -> None:
        """
        Connect and discover the account principal.

        Raises:
            TransportFailure: if the server cannot be reached or refuses us.
        """
        try:
            self._client = caldav.DAVClient(
                url=self.url,
                username=self.username or None,
                password=self.password or None,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
            self._principal = self._client.principal()
        except (DAVError, OSError) as e:
            raise self._failure("Principal discovery", e) from e
        logger.debug("Connected to CalDAV server %s", self.url)

    def get_calendars(self) -> list[CalendarInfo]:
        """
        List the calendar collections of the account.

        Returns:
            List of CalendarInfo objects.

        Raises:
            TransportFailure: if the listing fails.
        """
        if self._principal is None:
            self.connect()

        calendars = []
        try:
            for cal in self._principal.calendars():
                url = str(cal.url)
                cal_id = url.rstrip("/").split("/")[-1]
                calendars.append(CalendarInfo(
                    id=cal_id,
                    name=(cal.get_display_name() or "").strip() or cal_id or "Unnamed",
                    color=_calendar_color(cal),
                    url=url,
                    _caldav_calendar=cal,
                ))
        except (DAVError, OSError) as e:
            raise self._failure("Calendar listing", e) from e
        return calendars

    def find_calendar(self, calendars: list[CalendarInfo], url: str) -> Optional[CalendarInfo]:
        """Match a configured calendar URL against the remote collections."""
        wanted = normalize_url(url, self.url)
        for calendar in calendars:
            if normalize_url(calendar.url) == wanted:
                return calendar
        return None

    # ==================== Objects ====================

    def get_calendar_objects(self, calendar: CalendarInfo) -> list[str]:
        """
        Fetch every VEVENT-bearing object of a calendar.

        Returns:
            Raw VCALENDAR texts, one per calendar object resource.

        Raises:
            TransportFailure: if the calendar query fails.
        """
        cal = calendar._caldav_calendar
        if cal is None:
            if self._client is None:
                self.connect()
            cal = self._client.calendar(url=calendar.url)

        try:
            results = cal.search(event=True)
        except (DAVError, OSError) as e:
            raise self._failure("Calendar query", e, calendar.url) from e

        objects = [obj.data for obj in results if obj.data and obj.data.strip()]
        logger.debug("Fetched %d objects from %s", len(objects), calendar.url)
        return objects

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._principal = None
