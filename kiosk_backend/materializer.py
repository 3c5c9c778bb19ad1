"""
Occurrence materializer.

Turns raw VCALENDAR text into a flat list of EventOccurrence objects.
Recurring series are expanded with recurring_ical_events, which applies
RRULE, RDATE, EXDATE and RECURRENCE-ID overrides. This module resolves the
expanded instances to UTC, pins all-day dates, derives stable ids and caps
how many instances a single series may produce.
"""

import hashlib
import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

import pytz
from icalendar import Calendar as ICalendar
from recurring_ical_events import of as recurring_events_of

from . import timezone_utils as tzu
from .errors import MalformedCalendarData
from .models import EventOccurrence, UNTITLED_EVENT


logger = logging.getLogger(__name__)

# Safety limit on instances considered per recurring event
DEFAULT_MAX_OCCURRENCES = 500


def _as_list(prop) -> list:
    if prop is None:
        return []
    if isinstance(prop, list):
        return prop
    return [prop]


def _dt_value(component, name):
    """Get the decoded date/datetime/timedelta of a property, or None."""
    props = _as_list(component.get(name))
    if not props:
        return None
    # Broken values are kept unparsed by icalendar and have no .dt
    return getattr(props[0], "dt", None)


def _text(component, name) -> str:
    props = _as_list(component.get(name))
    if not props or props[0] is None:
        return ""
    return str(props[0])


def _is_cancelled(component) -> bool:
    return _text(component, "STATUS").upper() == "CANCELLED"


def _is_recurring(component) -> bool:
    return component.get("RRULE") is not None or component.get("RDATE") is not None


def _synthetic_uid(component) -> str:
    """Derive a deterministic id for events published without a UID."""
    start = component.get("DTSTART")
    seed = f"{_text(component, 'SUMMARY')}|{start.to_ical().decode() if start is not None else ''}"
    return hashlib.md5(seed.encode()).hexdigest()[:16]


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


class OccurrenceMaterializer:
    """
    Expands raw calendar objects into concrete occurrences.

    Args:
        default_timezone: IANA zone used for floating times. Defaults to the
            process-wide default from timezone_utils.
        max_occurrences: Maximum number of instances considered per
            recurring event, whether emitted or cancelled. Overrides count
            against the same limit.
    """

    def __init__(
        self,
        default_timezone: Optional[str] = None,
        max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
    ):
        self.default_timezone = default_timezone or tzu.get_default_timezone_name()
        self.max_occurrences = max_occurrences
        self._default_zone = tzu.get_zone(self.default_timezone)

    # ==================== Entry Point ====================

    def materialize(
        self,
        ics_text: str,
        calendar_name: str,
        calendar_id: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        source_id: str = "",
    ) -> list[EventOccurrence]:
        """
        Materialize every event found in one calendar object.

        Args:
            ics_text: Raw VCALENDAR text (one feed or one CalDAV object)
            calendar_name: Display name of the owning calendar
            calendar_id: Id of the owning calendar
            window_start: Optional lower bound; occurrences ending before it are dropped
            window_end: Optional upper bound; occurrences starting after it are dropped
            source_id: Id of the owning source, copied onto every occurrence

        Returns:
            List of EventOccurrence objects.

        Raises:
            MalformedCalendarData: if the text is not a calendar at all.
        """
        calendars = self._parse(ics_text)
        window_start = _as_utc(window_start)
        window_end = _as_utc(window_end)

        masters: dict[str, object] = {}
        overrides: dict[str, list] = {}
        for calendar in calendars:
            for component in calendar.walk("VEVENT"):
                uid = _text(component, "UID")
                if not uid:
                    uid = _synthetic_uid(component)
                    component["UID"] = uid
                recurrence_id = _dt_value(component, "RECURRENCE-ID")
                if recurrence_id is not None:
                    if component.get("DTSTART") is None:
                        component.add("DTSTART", recurrence_id)
                    overrides.setdefault(uid, []).append(component)
                else:
                    if uid in masters:
                        logger.debug("Duplicate UID %s in %s, keeping the last one", uid, calendar_name)
                    masters[uid] = component

        context = {
            "calendar_name": calendar_name,
            "calendar_id": calendar_id,
            "source_id": source_id,
        }

        occurrences: list[EventOccurrence] = []
        for uid, master in masters.items():
            occurrences.extend(
                self._materialize_series(
                    uid, master, overrides.pop(uid, []), window_start, window_end, context
                )
            )

        # Overrides whose master is not part of this object
        for uid, components in overrides.items():
            for component in components:
                if _is_cancelled(component):
                    continue
                occurrence = self._occurrence(
                    f"{uid}_{self._id_epoch(_dt_value(component, 'RECURRENCE-ID'))}",
                    component, component, True, window_start, window_end, context,
                )
                if occurrence:
                    occurrences.append(occurrence)

        return occurrences

    def _parse(self, ics_text) -> list:
        if ics_text is None or not ics_text.strip():
            raise MalformedCalendarData("Empty calendar data")
        try:
            calendars = ICalendar.from_ical(ics_text, multiple=True)
        except Exception as e:
            raise MalformedCalendarData(f"Cannot parse calendar data: {e}") from e
        if not calendars:
            raise MalformedCalendarData("No calendar component found")
        return calendars

    # ==================== Time Resolution ====================

    def _instant(self, value) -> datetime:
        """UTC instant of a date/datetime; dates land on the all-day anchor."""
        if not isinstance(value, datetime):
            return tzu.all_day_instant(value)
        if value.tzinfo is None:
            return tzu.localize(value, self._default_zone).astimezone(pytz.UTC)
        return value.astimezone(pytz.UTC)

    def _id_epoch(self, value) -> int:
        """Epoch seconds embedded in a recurring occurrence id."""
        if not isinstance(value, datetime):
            return int(tzu.midnight_utc(value).timestamp())
        return int(self._instant(value).timestamp())

    def _zone_name(self, component, value) -> Optional[str]:
        """Display zone of a start value, None for all-day."""
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is None:
            return self.default_timezone
        name = tzu.zone_name(value.tzinfo)
        if name is None:
            # Custom VTIMEZONE: trust the TZID if it happens to be an IANA name
            prop = _as_list(component.get("DTSTART"))[0]
            tzid = prop.params.get("TZID") if hasattr(prop, "params") else None
            if tzu.is_known_zone(tzid):
                name = tzid
        return name or self.default_timezone

    def _span(self, component, start_value) -> tuple[datetime, datetime]:
        """Start and end instants from DTSTART plus DTEND, else DURATION."""
        start = self._instant(start_value)
        end_value = _dt_value(component, "DTEND")
        if end_value is None:
            duration = _dt_value(component, "DURATION")
            if isinstance(duration, timedelta):
                end_value = start_value + duration

        if not isinstance(start_value, datetime):
            if end_value is None:
                end_value = start_value + timedelta(days=1)
            if isinstance(end_value, datetime):
                end_value = end_value.date()
            return start, max(tzu.all_day_instant(end_value), start)

        if end_value is None:
            return start, start
        if not isinstance(end_value, datetime):
            end_value = datetime.combine(end_value, time())
        if end_value.tzinfo is None and start_value.tzinfo is not None:
            end_value = tzu.localize(end_value, start_value.tzinfo)
        return start, max(self._instant(end_value), start)

    # ==================== Series ====================

    def _materialize_series(self, uid, master, overrides, window_start, window_end, context):
        if not isinstance(_dt_value(master, "DTSTART"), date):
            logger.warning("Skipping event %s in %s: missing DTSTART", uid, context["calendar_name"])
            return []

        if not _is_recurring(master):
            # Overrides of a non-recurring event have nothing to override
            occurrence = self._occurrence(uid, master, master, False, window_start, window_end, context)
            return [occurrence] if occurrence else []

        try:
            instances = self._expand(master, overrides, window_start, window_end)
        except (ValueError, TypeError, KeyError) as e:
            # recurring_ical_events.InvalidCalendar derives from ValueError
            logger.warning("Event %s has an unusable recurrence rule (%s), keeping one occurrence", uid, e)
            occurrence = self._occurrence(uid, master, master, False, window_start, window_end, context)
            return [occurrence] if occurrence else []

        results = []
        for component in instances:
            if _is_cancelled(component):
                continue
            # The id keeps pointing at the original slot when an instance moves
            recurrence_id = _dt_value(component, "RECURRENCE-ID")
            occurrence = self._occurrence(
                f"{uid}_{self._id_epoch(recurrence_id)}", component, master, True,
                window_start, window_end, context,
            )
            if occurrence:
                results.append(occurrence)
        return results

    def _expand(self, master, overrides, window_start, window_end) -> list:
        """
        Expand one series into its first instances in start order.

        At most max_occurrences instances are returned, cancelled ones
        included, so a series never yields more than the cap.
        """
        series = ICalendar()
        series.add("prodid", "-//Kiosk Calendar//materializer//")
        series.add("version", "2.0")
        series.add_component(master)
        for override in overrides:
            series.add_component(override)

        query = recurring_events_of(series)
        candidates = query.after(window_start) if window_start is not None else query.all()

        instances = []
        for component in candidates:
            if len(instances) >= self.max_occurrences:
                break
            if window_end is not None and self._instant(_dt_value(component, "DTSTART")) > window_end:
                break
            instances.append(component)
        return instances

    def _occurrence(self, occurrence_id, component, fallback, is_recurring,
                    window_start, window_end, context) -> Optional[EventOccurrence]:
        """Build the occurrence, or return None when it lies outside the window."""
        start_value = _dt_value(component, "DTSTART")
        start, end = self._span(component, start_value)
        if window_start is not None and end < window_start:
            return None
        if window_end is not None and start > window_end:
            return None
        return EventOccurrence(
            id=occurrence_id,
            source_id=context["source_id"],
            calendar_id=context["calendar_id"],
            calendar_name=context["calendar_name"],
            title=_text(component, "SUMMARY") or _text(fallback, "SUMMARY") or UNTITLED_EVENT,
            description=_text(component, "DESCRIPTION") or _text(fallback, "DESCRIPTION"),
            location=_text(component, "LOCATION") or _text(fallback, "LOCATION"),
            start=start,
            end=end,
            all_day=not isinstance(start_value, datetime),
            timezone=self._zone_name(component, start_value),
            is_recurring=is_recurring,
        )


def materialize(
    ics_text: str,
    calendar_name: str,
    calendar_id: str,
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
    source_id: str = "",
    default_timezone: Optional[str] = None,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[EventOccurrence]:
    """Materialize one calendar object with a throwaway OccurrenceMaterializer."""
    materializer = OccurrenceMaterializer(default_timezone, max_occurrences)
    return materializer.materialize(
        ics_text, calendar_name, calendar_id, window_start, window_end, source_id
    )
