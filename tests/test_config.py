"""
Tests for TOML configuration loading.
"""

import stat
from datetime import timedelta
from pathlib import Path

import pytest

from kiosk_backend.config import Config, SourceConfig
from kiosk_backend.errors import ConfigError


CONFIG_TOML = """
[General]
default_timezone = "Europe/Berlin"
database = "/var/lib/kiosk/calendar.db"
log_level = "debug"

[Sync]
interval = 120
backoff_minutes = [2, 4]
max_retries = 2

[Server]
port = 8080
cors_origins = ["http://kiosk.local"]

[Source."School Holidays"]
type = "ics-feed"
url = "webcal://school.example.com/holidays.ics"
color = "#00aa00"

[Source.Nextcloud]
url = "https://cloud.example.com/remote.php/dav"
username = "kiosk"
password = "s3cret"
calendars = [
    { name = "Family", url = "/remote.php/dav/calendars/kiosk/family/" },
    { name = "Work", url = "/remote.php/dav/calendars/kiosk/work/", enabled = false },
]
"""


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("DEFAULT_TIMEZONE", "DB_PATH", "ENCRYPTION_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "kiosk-calendar.toml"
    path.write_text(CONFIG_TOML)
    return path


def test_load_reads_sections(config_file):
    config = Config.load(config_file)

    assert config.general.default_timezone == "Europe/Berlin"
    assert config.general.database == Path("/var/lib/kiosk/calendar.db")
    assert config.general.log_level == "DEBUG"
    assert config.sync.interval == 120
    assert config.sync.initial_timeout == 60
    assert config.server.port == 8080
    assert config.server.host == "127.0.0.1"
    assert config.server.cors_origins == ["http://kiosk.local"]


def test_sync_policy_from_config(config_file):
    policy = Config.load(config_file).sync.policy()

    assert policy.max_retries == 2
    assert policy.backoff_minutes == (2, 4)


def test_feed_without_calendars_is_single_calendar(config_file):
    holidays = Config.load(config_file).sources[0]

    assert holidays.source_type == "ics"
    assert holidays.requires_auth is False
    assert [(c.name, c.url, c.color) for c in holidays.calendars] == [
        ("School Holidays", "webcal://school.example.com/holidays.ics", "#00aa00"),
    ]


def test_caldav_source_to_registry_data(config_file):
    nextcloud = Config.load(config_file).sources[1]

    data = nextcloud.to_registry_data("/usr/bin/pass")

    assert nextcloud.source_id == "config-nextcloud"
    assert data["source_type"] == "caldav"
    assert data["requires_auth"] is True
    assert data["password"] == "s3cret"
    assert [(c["id"], c["enabled"]) for c in data["calendars"]] == [
        ("config-nextcloud:0", True),
        ("config-nextcloud:1", False),
    ]


def test_source_id_is_slugged():
    assert SourceConfig(name="School Holidays!", url="x").source_id == "config-school-holidays"


def test_environment_overrides_file(config_file, monkeypatch):
    monkeypatch.setenv("DEFAULT_TIMEZONE", "America/New_York")
    monkeypatch.setenv("DB_PATH", "/tmp/kiosk.db")
    monkeypatch.setenv("ENCRYPTION_KEY", "from-env")

    config = Config.load(config_file)

    assert config.general.default_timezone == "America/New_York"
    assert config.general.database == Path("/tmp/kiosk.db")
    assert config.general.encryption_key == "from-env"


def test_defaults_without_file():
    config = Config.default()

    assert config.general.default_timezone == "America/Chicago"
    assert config.sync.backoff_minutes == [1, 5, 15]
    assert config.server.port == 3001
    assert config.sources == []


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.load(tmp_path / "nope.toml")


@pytest.mark.parametrize("text", [
    '[General]\ndefault_timezone = "Mars/Olympus"\n',
    "[Sync]\nmax_retries = 0\n",
    "[Sync]\nbackoff_minutes = []\n",
    "[Sync]\nwindow_past_days = -1\n",
    '[Source.Broken]\ntype = "exchange"\nurl = "https://x"\n',
    "[Source.NoUrl]\nusername = \"kiosk\"\n",
    "this is not toml",
])
def test_invalid_config_raises(tmp_path, text):
    path = tmp_path / "bad.toml"
    path.write_text(text)

    with pytest.raises(ConfigError):
        Config.load(path)


def test_password_program_output(tmp_path):
    program = tmp_path / "fake-pass"
    program.write_text('#!/bin/sh\necho "pw-for-$1"\necho "url: ignored"\n')
    program.chmod(program.stat().st_mode | stat.S_IEXEC)
    source = SourceConfig(name="Cloud", url="https://x", password_key="cloud/kiosk")

    assert source.get_password(str(program)) == "pw-for-cloud/kiosk"


def test_missing_password_program_raises(tmp_path):
    source = SourceConfig(name="Cloud", url="https://x", password_key="cloud/kiosk")

    with pytest.raises(ConfigError):
        source.get_password(str(tmp_path / "no-such-program"))


def test_no_password_key_means_no_password():
    assert SourceConfig(name="Cloud", url="https://x").get_password("/nonexistent") == ""


def test_materialization_window(tmp_path):
    path = tmp_path / "window.toml"
    path.write_text("[Sync]\nwindow_past_days = 7\nwindow_future_days = 0\n")

    sync = Config.load(path).sync

    assert sync.window() == (timedelta(days=7), None)
    assert Config.default().sync.window() == (timedelta(days=30), timedelta(days=365))
