"""
Tests for the source registry.
"""

from datetime import datetime, timedelta

import pytest
import pytz

from kiosk_backend import database
from kiosk_backend.crypto import decrypt_password
from kiosk_backend.errors import SourceNotFound
from kiosk_backend.event_storage import SqliteEventStorage
from kiosk_backend.models import EventOccurrence


CALDAV_DATA = {
    "name": "Nextcloud",
    "url": "https://cloud.example.com/remote.php/dav",
    "username": "kiosk",
    "password": "s3cret",
    "calendars": [
        {"id": "cal-a", "name": "Family", "url": "/remote.php/dav/calendars/kiosk/family/"},
        {"id": "cal-b", "name": "Work", "url": "/remote.php/dav/calendars/kiosk/work/", "enabled": False},
    ],
}


def test_create_source_applies_defaults(registry):
    source = registry.create_source(CALDAV_DATA)

    assert source.source_type == "caldav"
    assert source.requires_auth is True
    assert source.is_public is False
    assert source.enabled is True
    assert source.is_active is True
    assert source.password == "s3cret"
    assert [c.color for c in source.calendars] == ["#3788d8", "#3788d8"]


def test_password_is_encrypted_at_rest(registry, db_path):
    source = registry.create_source(CALDAV_DATA)
    with database.connect(db_path) as conn:
        row = conn.execute(
            "SELECT password_encrypted FROM calendar_sources WHERE id = ?", (source.id,)
        ).fetchone()

    assert row["password_encrypted"] != "s3cret"
    assert decrypt_password(row["password_encrypted"]) == "s3cret"


@pytest.mark.parametrize("data", [{"url": "https://x"}, {"name": "No url"}])
def test_create_requires_name_and_url(registry, data):
    with pytest.raises(ValueError):
        registry.create_source(data)


def test_create_rejects_unknown_type(registry):
    with pytest.raises(ValueError):
        registry.create_source({**CALDAV_DATA, "source_type": "exchange"})


def test_ics_feed_alias_is_stored_as_ics(registry):
    source = registry.create_source({"name": "Holidays", "url": "https://x/h.ics", "source_type": "ics-feed"})

    assert source.source_type == "ics"
    assert source.is_caldav is False


def test_enabled_calendars_skips_disabled(registry):
    source = registry.create_source(CALDAV_DATA)

    assert [c.id for c in registry.enabled_calendars(source.id)] == ["cal-a"]


def test_update_is_partial(registry):
    source = registry.create_source(CALDAV_DATA)

    updated = registry.update_source(source.id, {"name": "Cloud", "enabled": False})

    assert updated.name == "Cloud"
    assert updated.enabled is False
    assert updated.username == "kiosk"
    assert updated.password == "s3cret"
    assert len(updated.calendars) == 2


def test_update_calendars_replaces_list(registry):
    source = registry.create_source(CALDAV_DATA)

    updated = registry.update_source(source.id, {
        "calendars": [{"id": "cal-c", "name": "Chores", "calendar_url": "/chores/", "color": "#00ff00"}],
    })

    assert [(c.id, c.calendar_url, c.color) for c in updated.calendars] == [("cal-c", "/chores/", "#00ff00")]


def test_update_unknown_source_raises(registry):
    with pytest.raises(SourceNotFound):
        registry.update_source("missing", {"name": "x"})


def test_soft_delete_hides_source_and_drops_events(registry, db_path):
    source = registry.create_source(CALDAV_DATA)
    storage = SqliteEventStorage(db_path)
    start = datetime(2024, 11, 1, 15, tzinfo=pytz.UTC)
    storage.replace_source_events(source.id, [
        EventOccurrence("e1", source.id, "cal-a", "Dinner", start, start + timedelta(hours=1)),
    ])

    registry.delete_source(source.id)

    assert registry.list_sources() == []
    assert registry.get_source(source.id).is_active is False
    assert storage.count_events(source.id) == 0
    with pytest.raises(SourceNotFound):
        registry.get_active_source(source.id)


def test_delete_unknown_source_raises(registry):
    with pytest.raises(SourceNotFound):
        registry.delete_source("missing")


def test_hard_delete_cascades(registry, db_path):
    source = registry.create_source(CALDAV_DATA)

    registry.hard_delete_source(source.id)

    assert registry.get_source(source.id) is None
    assert registry.get_calendars(source.id) == []


def test_list_syncable_sources_only_active_and_enabled(registry):
    registry.create_source({**CALDAV_DATA, "id": "on"})
    registry.create_source({**CALDAV_DATA, "id": "off", "enabled": False, "calendars": []})
    registry.create_source({**CALDAV_DATA, "id": "gone", "calendars": []})
    registry.delete_source("gone")

    assert [s.id for s in registry.list_syncable_sources()] == ["on"]
    assert len(registry.list_sources(include_inactive=True)) == 3


def test_batch_upsert_collects_errors(registry):
    registry.create_source({**CALDAV_DATA, "id": "existing", "calendars": []})

    results = registry.batch_upsert([
        {"id": "existing", "name": "Renamed"},
        {"name": "Feed", "url": "https://x/f.ics", "source_type": "ics"},
        {"name": "Broken"},
    ])

    assert results[0].name == "Renamed"
    assert results[1].source_type == "ics"
    assert "error" in results[2]


def test_seed_source_is_idempotent(registry, db_path):
    seed = {
        "id": "config-family",
        "name": "Family",
        "url": "https://x/f.ics",
        "source_type": "ics",
        "requires_auth": False,
        "calendars": [{"id": "config-family:0", "name": "Family", "url": "https://x/f.ics"}],
    }
    registry.seed_source(seed)
    storage = SqliteEventStorage(db_path)
    start = datetime(2024, 11, 1, 15, tzinfo=pytz.UTC)
    storage.replace_source_events("config-family", [
        EventOccurrence("e1", "config-family", "config-family:0", "Dinner", start, start),
    ])

    registry.seed_source({**seed, "name": "Family feed"})

    assert registry.get_source("config-family").name == "Family feed"
    # Unchanged calendars are not rewritten, so the cache survives
    assert storage.count_events("config-family") == 1


def test_seed_does_not_resurrect_deleted_source(registry):
    seed = {"id": "config-x", "name": "X", "url": "https://x/x.ics", "source_type": "ics", "calendars": []}
    registry.seed_source(seed)
    registry.delete_source("config-x")

    registry.seed_source(seed)

    assert registry.get_source("config-x").is_active is False


def test_undecryptable_password_is_logged_with_source(registry, db_path, caplog):
    source = registry.create_source(CALDAV_DATA)
    with database.connect(db_path) as conn:
        conn.execute(
            "UPDATE calendar_sources SET password_encrypted = 'garbage' WHERE id = ?", (source.id,)
        )

    with caplog.at_level("ERROR", logger="kiosk_backend.source_registry"):
        loaded = registry.get_source(source.id)

    assert loaded.password == ""
    assert "cannot be decrypted" in loaded.password_error
    assert f"Source Nextcloud ({source.id})" in caplog.text
    assert [s.id for s in registry.list_sources()] == [source.id]
