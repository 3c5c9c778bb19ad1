"""
Kiosk Calendar Backend Module

This module provides the sync and materialization core:
- Configuration parsing (config.py)
- Occurrence materializer (materializer.py) - expands VEVENTs into occurrences
- CalDAV client and ICS feed fetching (caldav_client.py, ics_subscription.py)
- Source registry and event cache on SQLite (source_registry.py, event_storage.py)
- Sync orchestrator and scheduler (sync_orchestrator.py, scheduler.py)
"""

__version__ = "1.0.0"

from .config import Config
from .errors import (
    ConfigError,
    KioskError,
    MalformedCalendarData,
    SourceNotFound,
    TransportFailure,
)
from .event_storage import EventStorageBackend, SqliteEventStorage, create_storage_backend
from .materializer import OccurrenceMaterializer, materialize
from .models import Calendar, CalendarSource, EventOccurrence
from .scheduler import SyncScheduler
from .source_registry import SourceRegistry
from .sync_orchestrator import SyncOrchestrator, SyncResult

__all__ = [
    'Config',
    'ConfigError',
    'KioskError',
    'MalformedCalendarData',
    'SourceNotFound',
    'TransportFailure',
    'EventStorageBackend',
    'SqliteEventStorage',
    'create_storage_backend',
    'OccurrenceMaterializer',
    'materialize',
    'Calendar',
    'CalendarSource',
    'EventOccurrence',
    'SyncScheduler',
    'SourceRegistry',
    'SyncOrchestrator',
    'SyncResult',
]
