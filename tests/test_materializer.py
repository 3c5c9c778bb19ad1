"""
Tests for the occurrence materializer.
"""

from datetime import datetime, timedelta

import pytest
import pytz

from kiosk_backend.errors import MalformedCalendarData
from kiosk_backend.materializer import OccurrenceMaterializer, materialize


def calendar(*events: str) -> str:
    body = "\n".join(event.strip() for event in events)
    return f"BEGIN:VCALENDAR\nVERSION:2.0\nPRODID:-//Example//Tests//EN\n{body}\nEND:VCALENDAR\n"


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=pytz.UTC)


@pytest.fixture
def materializer():
    return OccurrenceMaterializer(default_timezone="America/Chicago")


def test_single_event_uses_uid_as_id(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:one@example.com
DTSTART:20241115T150000Z
DTEND:20241115T160000Z
SUMMARY:Piano lesson
DESCRIPTION:Bring the book
LOCATION:Music school
END:VEVENT
""")
    [occurrence] = materializer.materialize(ics, "Family", "cal-1", source_id="src-1")

    assert occurrence.id == "one@example.com"
    assert occurrence.title == "Piano lesson"
    assert occurrence.description == "Bring the book"
    assert occurrence.location == "Music school"
    assert occurrence.start == utc(2024, 11, 15, 15, 0)
    assert occurrence.end == utc(2024, 11, 15, 16, 0)
    assert occurrence.source_id == "src-1"
    assert occurrence.calendar_id == "cal-1"
    assert occurrence.calendar_name == "Family"
    assert occurrence.is_recurring is False
    assert occurrence.all_day is False


def test_unbounded_daily_rule_is_capped_at_500(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:forever@example.com
DTSTART:20240101T080000Z
DTEND:20240101T083000Z
RRULE:FREQ=DAILY
SUMMARY:Vitamins
END:VEVENT
""")
    occurrences = materializer.materialize(ics, "Family", "cal-1")

    assert len(occurrences) == 500
    assert len({occurrence.id for occurrence in occurrences}) == 500


def test_cap_is_configurable():
    ics = calendar("""
BEGIN:VEVENT
UID:forever@example.com
DTSTART:20240101T080000Z
RRULE:FREQ=DAILY
SUMMARY:Vitamins
END:VEVENT
""")
    assert len(materialize(ics, "Family", "cal-1", max_occurrences=20)) == 20


def test_exdate_removes_one_instance(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:standup@example.com
DTSTART;TZID=America/Chicago:20241104T090000
DTEND;TZID=America/Chicago:20241104T091500
RRULE:FREQ=DAILY;COUNT=5
EXDATE;TZID=America/Chicago:20241106T090000
SUMMARY:Standup
END:VEVENT
""")
    occurrences = materializer.materialize(ics, "Work", "cal-1")
    excluded = utc(2024, 11, 6, 15, 0)

    assert len(occurrences) == 4
    assert excluded not in [occurrence.start for occurrence in occurrences]
    assert f"standup@example.com_{int(excluded.timestamp())}" not in [o.id for o in occurrences]


def test_until_is_inclusive(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:walk@example.com
DTSTART;TZID=America/Chicago:20241101T090000
DTEND;TZID=America/Chicago:20241101T093000
RRULE:FREQ=DAILY;UNTIL=20241104T235959Z
SUMMARY:Dog walk
END:VEVENT
""")
    occurrences = materializer.materialize(ics, "Family", "cal-1")
    days = [occurrence.start.astimezone(pytz.timezone("America/Chicago")).day for occurrence in occurrences]

    assert days == [1, 2, 3, 4]


def test_recurring_wall_time_survives_dst_change(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:walk@example.com
DTSTART;TZID=America/Chicago:20241101T090000
RRULE:FREQ=DAILY;COUNT=4
SUMMARY:Dog walk
END:VEVENT
""")
    starts = [o.start for o in materializer.materialize(ics, "Family", "cal-1")]

    # CDT until Nov 3, CST afterwards
    assert starts == [
        utc(2024, 11, 1, 14, 0),
        utc(2024, 11, 2, 14, 0),
        utc(2024, 11, 3, 15, 0),
        utc(2024, 11, 4, 15, 0),
    ]


def test_recurring_ids_embed_epoch_seconds(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:weekly@example.com
DTSTART:20241104T150000Z
RRULE:FREQ=WEEKLY;COUNT=2
SUMMARY:Soccer
END:VEVENT
""")
    ids = [o.id for o in materializer.materialize(ics, "Family", "cal-1")]

    first = int(utc(2024, 11, 4, 15, 0).timestamp())
    second = int(utc(2024, 11, 11, 15, 0).timestamp())
    assert ids == [f"weekly@example.com_{first}", f"weekly@example.com_{second}"]


@pytest.mark.parametrize("zone", [
    "America/Los_Angeles", "Pacific/Honolulu", "Europe/Berlin", "Asia/Tokyo", "Australia/Sydney",
])
def test_all_day_event_keeps_its_date_in_any_zone(materializer, zone):
    ics = calendar("""
BEGIN:VEVENT
UID:xmas@example.com
DTSTART;VALUE=DATE:20241225
DTEND;VALUE=DATE:20241226
SUMMARY:Christmas
END:VEVENT
""")
    [occurrence] = materializer.materialize(ics, "Holidays", "cal-1")

    assert occurrence.all_day is True
    assert occurrence.timezone is None
    assert occurrence.start == utc(2024, 12, 25, 12, 0)
    assert occurrence.start.astimezone(pytz.timezone(zone)).date().isoformat() == "2024-12-25"


def test_all_day_without_dtend_lasts_one_day(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:bday@example.com
DTSTART;VALUE=DATE:20240704
SUMMARY:Party
END:VEVENT
""")
    [occurrence] = materializer.materialize(ics, "Family", "cal-1")

    assert occurrence.end - occurrence.start == timedelta(days=1)


def test_floating_time_resolves_in_default_zone(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:floating@example.com
DTSTART:20241115T093000
SUMMARY:Breakfast
END:VEVENT
""")
    [occurrence] = materializer.materialize(ics, "Family", "cal-1")

    assert occurrence.start == utc(2024, 11, 15, 15, 30)
    assert occurrence.timezone == "America/Chicago"


def test_explicit_zone_is_recorded(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:call@example.com
DTSTART;TZID=Europe/Berlin:20241115T180000
DURATION:PT45M
SUMMARY:Call grandma
END:VEVENT
""")
    [occurrence] = materializer.materialize(ics, "Family", "cal-1")

    assert occurrence.timezone == "Europe/Berlin"
    assert occurrence.start == utc(2024, 11, 15, 17, 0)
    assert occurrence.end == utc(2024, 11, 15, 17, 45)


def test_missing_end_collapses_to_start(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:reminder@example.com
DTSTART:20241115T150000Z
SUMMARY:Reminder
END:VEVENT
""")
    [occurrence] = materializer.materialize(ics, "Family", "cal-1")

    assert occurrence.end == occurrence.start


def test_missing_summary_gets_placeholder_title(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:blank@example.com
DTSTART:20241115T150000Z
END:VEVENT
""")
    [occurrence] = materializer.materialize(ics, "Family", "cal-1")

    assert occurrence.title == "Untitled Event"


def test_override_replaces_instance_and_cancelled_override_removes_it(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:class@example.com
DTSTART:20241104T150000Z
DTEND:20241104T160000Z
RRULE:FREQ=DAILY;COUNT=3
SUMMARY:Swim class
END:VEVENT
BEGIN:VEVENT
UID:class@example.com
RECURRENCE-ID:20241105T150000Z
DTSTART:20241105T170000Z
DTEND:20241105T180000Z
SUMMARY:Swim class (moved)
END:VEVENT
BEGIN:VEVENT
UID:class@example.com
RECURRENCE-ID:20241106T150000Z
DTSTART:20241106T150000Z
STATUS:CANCELLED
END:VEVENT
""")
    occurrences = materializer.materialize(ics, "Family", "cal-1")

    assert [o.title for o in occurrences] == ["Swim class", "Swim class (moved)"]
    moved = occurrences[1]
    assert moved.start == utc(2024, 11, 5, 17, 0)
    # The id still points at the original slot
    assert moved.id == f"class@example.com_{int(utc(2024, 11, 5, 15, 0).timestamp())}"


def test_rdate_adds_instances(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:extra@example.com
DTSTART:20241104T150000Z
RRULE:FREQ=WEEKLY;COUNT=2
RDATE:20241106T150000Z
SUMMARY:Tutoring
END:VEVENT
""")
    starts = [o.start for o in materializer.materialize(ics, "Family", "cal-1")]

    assert starts == [utc(2024, 11, 4, 15, 0), utc(2024, 11, 6, 15, 0), utc(2024, 11, 11, 15, 0)]


def test_window_keeps_overlapping_occurrences(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:daily@example.com
DTSTART:20241101T150000Z
DTEND:20241101T160000Z
RRULE:FREQ=DAILY
SUMMARY:Homework
END:VEVENT
""")
    occurrences = materializer.materialize(
        ics, "Family", "cal-1",
        window_start=utc(2024, 11, 10, 15, 30),
        window_end=utc(2024, 11, 12, 15, 0),
    )

    # Nov 10 still running at window start, Nov 12 starts exactly at window end
    assert [o.start.day for o in occurrences] == [10, 11, 12]


def test_broken_rule_falls_back_to_single_occurrence(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:broken@example.com
DTSTART:20241104T150000Z
RRULE:FREQ=SOMETIMES
SUMMARY:Odd event
END:VEVENT
""")
    occurrences = materializer.materialize(ics, "Family", "cal-1")

    assert len(occurrences) == 1
    assert occurrences[0].id == "broken@example.com"


def test_event_without_uid_gets_stable_id(materializer):
    ics = calendar("""
BEGIN:VEVENT
DTSTART:20241104T150000Z
SUMMARY:No uid
END:VEVENT
""")
    first = materializer.materialize(ics, "Family", "cal-1")
    second = materializer.materialize(ics, "Family", "cal-1")

    assert first[0].id == second[0].id


@pytest.mark.parametrize("text", ["", "   ", "this is not a calendar"])
def test_malformed_text_raises(materializer, text):
    with pytest.raises(MalformedCalendarData):
        materializer.materialize(text, "Family", "cal-1")


def test_overrides_count_against_the_cap(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:forever@example.com
DTSTART:20240101T080000Z
DTEND:20240101T083000Z
RRULE:FREQ=DAILY
SUMMARY:Vitamins
END:VEVENT
BEGIN:VEVENT
UID:forever@example.com
RECURRENCE-ID:20260101T080000Z
DTSTART:20260101T100000Z
DTEND:20260101T103000Z
SUMMARY:Vitamins (late)
END:VEVENT
""")
    occurrences = materializer.materialize(ics, "Family", "cal-1")

    # Instance 500 falls on 2025-05-14; the override lies beyond it
    assert len(occurrences) == 500
    assert "Vitamins (late)" not in {o.title for o in occurrences}


def test_window_reaches_a_long_running_series(materializer):
    ics = calendar("""
BEGIN:VEVENT
UID:meds@example.com
DTSTART:20150105T080000Z
DTEND:20150105T081500Z
RRULE:FREQ=DAILY
SUMMARY:Medication
END:VEVENT
""")
    occurrences = materializer.materialize(
        ics, "Family", "cal-1",
        window_start=utc(2024, 11, 1, 0, 0),
        window_end=utc(2024, 11, 3, 23, 59),
    )

    assert [o.start for o in occurrences] == [
        utc(2024, 11, 1, 8, 0), utc(2024, 11, 2, 8, 0), utc(2024, 11, 3, 8, 0),
    ]
    assert occurrences[0].id == f"meds@example.com_{int(utc(2024, 11, 1, 8, 0).timestamp())}"
