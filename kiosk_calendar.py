#!/usr/bin/env python3
"""
Kiosk Calendar - calendar sync backend for a wall-mounted kitchen kiosk.

This is the main entry point: it loads the configuration, seeds the
configured sources, starts the sync schedule and serves the HTTP API.
"""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from kiosk_api import create_app
from kiosk_backend import crypto, timezone_utils
from kiosk_backend.config import Config
from kiosk_backend.errors import ConfigError
from kiosk_backend.event_storage import create_storage_backend
from kiosk_backend.logging_setup import configure_logging
from kiosk_backend.materializer import OccurrenceMaterializer
from kiosk_backend.scheduler import SyncScheduler
from kiosk_backend.source_registry import SourceRegistry
from kiosk_backend.sync_orchestrator import SyncOrchestrator


logger = logging.getLogger("kiosk_calendar")

EXAMPLE_CONFIG = """
[General]
default_timezone = "America/Chicago"
password_program = "/usr/bin/pass"

[Sync]
interval = 300

[Server]
port = 3001

[Source.Family]
type = "caldav"
url = "https://nextcloud.example.com/remote.php/dav"
username = "kiosk"
password_key = "nextcloud/kiosk"
calendars = [
    { name = "Family", url = "/remote.php/dav/calendars/kiosk/family/", color = "#3788d8" },
]

[Source.Holidays]
type = "ics"
url = "https://example.com/holidays.ics"
requires_auth = false
"""


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Kiosk Calendar - sync CalDAV and ICS calendars into a local cache and serve them"
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to configuration file (default: auto-detect)"
    )
    parser.add_argument(
        "--no-config",
        action="store_true",
        help="Run with built-in defaults and environment overrides only"
    )
    parser.add_argument("--host", help="Override the listen address")
    parser.add_argument("--port", type=int, help="Override the listen port")
    parser.add_argument(
        "--sync-once",
        action="store_true",
        help="Run a single sync cycle and exit"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output"
    )
    return parser.parse_args()


def load_config(args) -> Config:
    if args.no_config:
        return Config.default()
    try:
        return Config.load(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        print("\nPlease create a configuration file at:")
        print(f"  - {Config.get_default_config_path()}")
        print("\nor start with --no-config. Example configuration:")
        print(EXAMPLE_CONFIG)
        sys.exit(1)
    except ConfigError as e:
        print(f"Error loading configuration: {e}")
        sys.exit(1)


def seed_sources(config: Config, registry: SourceRegistry) -> None:
    """Create or refresh the sources defined in the configuration file."""
    for source_config in config.sources:
        try:
            registry.seed_source(source_config.to_registry_data(config.general.password_program))
        except (ConfigError, ValueError) as e:
            logger.error("Cannot seed source %s: %s", source_config.name, e)


def main():
    """Main entry point."""
    args = parse_args()
    config = load_config(args)

    level = "DEBUG" if args.debug else config.general.log_level
    configure_logging(level, config.general.log_file)

    timezone_utils.set_default_timezone(config.general.default_timezone)
    crypto.set_encryption_key(config.general.encryption_key)

    db_path = config.general.database
    storage = create_storage_backend(db_path)
    registry = SourceRegistry(db_path)
    seed_sources(config, registry)

    window_past, window_future = config.sync.window()
    orchestrator = SyncOrchestrator(
        registry,
        storage,
        materializer=OccurrenceMaterializer(
            config.general.default_timezone, config.sync.max_occurrences
        ),
        policy=config.sync.policy(),
        max_workers=config.sync.max_workers,
        timeout=config.sync.background_timeout,
        window_past=window_past,
        window_future=window_future,
    )
    scheduler = SyncScheduler(
        orchestrator,
        interval=config.sync.interval,
        initial_timeout=config.sync.initial_timeout,
        background_timeout=config.sync.background_timeout,
    )

    if args.sync_once:
        results = scheduler.run_once()
        orchestrator.shutdown()
        for result in results:
            print(f"{result.source_id}: {'ok' if result.success else 'failed'} "
                  f"({result.count} occurrences){' - ' + result.error if result.error else ''}")
        sys.exit(0 if all(result.success for result in results) else 1)

    logger.info("Using database %s", db_path)
    app = create_app(orchestrator, db_path, scheduler, config.server.cors_origins)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
