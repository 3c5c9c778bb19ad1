"""
Configuration parser for the kiosk calendar.

Handles TOML file parsing, environment overrides and secure password
retrieval via external programs.
"""

import logging
import os
import re
import subprocess
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

from .database import get_default_database_path
from .errors import ConfigError
from .models import DEFAULT_CALENDAR_COLOR, normalize_source_type
from .sync_state import BackoffPolicy
from .timezone_utils import DEFAULT_TIMEZONE, is_known_zone


logger = logging.getLogger(__name__)


@dataclass
class SourceCalendarConfig:
    """One calendar of a configured source."""
    name: str
    url: str
    color: str = DEFAULT_CALENDAR_COLOR
    enabled: bool = True


@dataclass
class SourceConfig:
    """Configuration for a [Source.<Name>] table."""
    name: str
    url: str
    source_type: str = "caldav"
    username: str = ""
    password_key: str = ""
    requires_auth: bool = True
    is_public: bool = False
    enabled: bool = True
    calendars: list[SourceCalendarConfig] = field(default_factory=list)

    _password: Optional[str] = field(default=None, repr=False)

    @property
    def source_id(self) -> str:
        """Stable registry id derived from the table name."""
        return "config-" + re.sub(r"[^a-z0-9]+", "-", self.name.lower()).strip("-")

    def get_password(self, password_program: str) -> str:
        """Return the inline password, or retrieve it with the password program."""
        if self._password is None:
            if not self.password_key:
                return ""
            try:
                result = subprocess.run(
                    [password_program, self.password_key],
                    capture_output=True,
                    text=True,
                    timeout=30
                )
            except subprocess.TimeoutExpired:
                raise ConfigError(f"Password program timed out for key '{self.password_key}'")
            except FileNotFoundError:
                raise ConfigError(f"Password program not found: {password_program}")
            if result.returncode != 0:
                raise ConfigError(
                    f"Password program failed for key '{self.password_key}': {result.stderr.strip()}"
                )
            # pass(1) prints the password on the first line
            lines = result.stdout.splitlines()
            self._password = lines[0].strip() if lines else ""
        return self._password

    def to_registry_data(self, password_program: str) -> dict:
        """Build the dict accepted by SourceRegistry.seed_source."""
        return {
            "id": self.source_id,
            "name": self.name,
            "url": self.url,
            "source_type": self.source_type,
            "username": self.username,
            "password": self.get_password(password_program) if self.requires_auth else "",
            "requires_auth": self.requires_auth,
            "is_public": self.is_public,
            "enabled": self.enabled,
            "calendars": [
                {
                    "id": f"{self.source_id}:{index}",
                    "name": calendar.name,
                    "url": calendar.url,
                    "color": calendar.color,
                    "enabled": calendar.enabled,
                }
                for index, calendar in enumerate(self.calendars)
            ],
        }


@dataclass
class GeneralConfig:
    """The [General] section."""
    default_timezone: str = DEFAULT_TIMEZONE
    database: Path = field(default_factory=get_default_database_path)
    encryption_key: Optional[str] = None
    password_program: str = "/usr/bin/pass"
    log_level: str = "INFO"
    log_file: Optional[Path] = None


@dataclass
class SyncConfig:
    """Configuration for sync scheduling and retry behavior."""
    interval: int = 300             # Seconds between background sync cycles
    initial_timeout: int = 60       # Request timeout of the first cycle after startup
    background_timeout: int = 45    # Request timeout of later cycles
    max_retries: int = 3
    backoff_minutes: list[int] = field(default_factory=lambda: [1, 5, 15])
    max_occurrences: int = 500      # Per recurring event
    max_workers: int = 4            # Sources synced in parallel
    window_past_days: int = 30      # Occurrences kept before now, 0 for no limit
    window_future_days: int = 365   # Occurrences kept after now, 0 for no limit

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(max_retries=self.max_retries, backoff_minutes=tuple(self.backoff_minutes))

    def window(self) -> tuple[Optional[timedelta], Optional[timedelta]]:
        """Materialization window around the sync time as (past, future)."""
        past = timedelta(days=self.window_past_days) if self.window_past_days else None
        future = timedelta(days=self.window_future_days) if self.window_future_days else None
        return past, future


@dataclass
class ServerConfig:
    """The [Server] section."""
    host: str = "127.0.0.1"
    port: int = 3001
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


def _parse_calendar(data: dict, index: int) -> SourceCalendarConfig:
    url = data.get('url', '')
    if not url:
        raise ConfigError(f"Calendar #{index + 1} has no url")
    return SourceCalendarConfig(
        name=data.get('name', url),
        url=url,
        color=data.get('color', DEFAULT_CALENDAR_COLOR),
        enabled=bool(data.get('enabled', True)),
    )


def _parse_source(name: str, data: dict) -> SourceConfig:
    url = data.get('url', '')
    if not url:
        raise ConfigError(f"Source '{name}' has no url")
    try:
        source_type = normalize_source_type(data.get('type'))
    except ValueError as e:
        raise ConfigError(f"Source '{name}': {e}") from e

    calendars = [_parse_calendar(cal, i) for i, cal in enumerate(data.get('calendars', []))]
    # A feed without an explicit calendar list is its own single calendar
    if not calendars and source_type == "ics":
        calendars = [SourceCalendarConfig(name=name, url=url, color=data.get('color', DEFAULT_CALENDAR_COLOR))]

    source = SourceConfig(
        name=name,
        url=url,
        source_type=source_type,
        username=data.get('username', ''),
        password_key=data.get('password_key', ''),
        requires_auth=bool(data.get('requires_auth', source_type == "caldav")),
        is_public=bool(data.get('is_public', False)),
        enabled=bool(data.get('enabled', True)),
        calendars=calendars,
    )
    if 'password' in data:
        source._password = str(data['password'])
    return source


@dataclass
class Config:
    """Main configuration container for the kiosk calendar."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    sources: list[SourceConfig] = field(default_factory=list)

    @classmethod
    def get_default_config_path(cls) -> Path:
        """Get the default configuration file path."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
        return Path(xdg_config) / 'kiosk-calendar' / 'kiosk-calendar.toml'

    @classmethod
    def default(cls) -> 'Config':
        """All-defaults configuration, with environment overrides applied."""
        config = cls()
        config._apply_environment()
        config._validate()
        return config

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'Config':
        """Load configuration from TOML file."""
        if config_path is None:
            config_path = cls.get_default_config_path()

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'rb') as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

        # Parse General section
        general_data = data.get('General', {})
        log_file = general_data.get('log_file')
        general = GeneralConfig(
            default_timezone=general_data.get('default_timezone', DEFAULT_TIMEZONE),
            database=Path(os.path.expanduser(
                general_data.get('database', str(get_default_database_path()))
            )),
            encryption_key=general_data.get('encryption_key'),
            password_program=general_data.get('password_program', GeneralConfig.password_program),
            log_level=str(general_data.get('log_level', GeneralConfig.log_level)).upper(),
            log_file=Path(os.path.expanduser(log_file)) if log_file else None,
        )

        # Parse Sync section
        sync_data = data.get('Sync', {})
        defaults = SyncConfig()
        sync = SyncConfig(
            interval=sync_data.get('interval', defaults.interval),
            initial_timeout=sync_data.get('initial_timeout', defaults.initial_timeout),
            background_timeout=sync_data.get('background_timeout', defaults.background_timeout),
            max_retries=sync_data.get('max_retries', defaults.max_retries),
            backoff_minutes=list(sync_data.get('backoff_minutes', defaults.backoff_minutes)),
            max_occurrences=sync_data.get('max_occurrences', defaults.max_occurrences),
            max_workers=sync_data.get('max_workers', defaults.max_workers),
            window_past_days=sync_data.get('window_past_days', defaults.window_past_days),
            window_future_days=sync_data.get('window_future_days', defaults.window_future_days),
        )

        # Parse Server section
        server_data = data.get('Server', {})
        server = ServerConfig(
            host=server_data.get('host', ServerConfig.host),
            port=server_data.get('port', ServerConfig.port),
            cors_origins=list(server_data.get('cors_origins', ["*"])),
        )

        # Parse sources; supports [Source.Name] tables
        sources = []
        for name, value in data.get('Source', {}).items():
            if isinstance(value, dict):
                sources.append(_parse_source(name, value))
        logger.debug("Found %d configured sources in %s", len(sources), config_path)

        config = cls(general=general, sync=sync, server=server, sources=sources)
        config._apply_environment()
        config._validate()
        return config

    def _apply_environment(self) -> None:
        """Environment variables win over the file."""
        if os.environ.get('DEFAULT_TIMEZONE'):
            self.general.default_timezone = os.environ['DEFAULT_TIMEZONE']
        if os.environ.get('DB_PATH'):
            self.general.database = Path(os.path.expanduser(os.environ['DB_PATH']))
        if os.environ.get('ENCRYPTION_KEY'):
            self.general.encryption_key = os.environ['ENCRYPTION_KEY']

    def _validate(self) -> None:
        if not is_known_zone(self.general.default_timezone):
            raise ConfigError(f"Unknown timezone: {self.general.default_timezone}")
        if self.sync.max_retries < 1:
            raise ConfigError("max_retries must be at least 1")
        if not self.sync.backoff_minutes:
            raise ConfigError("backoff_minutes must not be empty")
        if self.sync.window_past_days < 0 or self.sync.window_future_days < 0:
            raise ConfigError("window_past_days and window_future_days must not be negative")
