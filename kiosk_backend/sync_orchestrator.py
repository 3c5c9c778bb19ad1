"""
Sync orchestration: fetch, materialize and cache the events of each source.

One sync attempt per source runs at a time (per-source lock); different
sources sync in parallel on the NetworkWorker pool.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Optional

import pytz

from .caldav_client import CalDAVClient
from .errors import ConfigError, MalformedCalendarData, SourceNotFound, TransportFailure
from .event_storage import EventStorageBackend
from .ics_subscription import DEFAULT_TIMEOUT, fetch_ics
from .materializer import OccurrenceMaterializer
from .models import Calendar, CalendarSource, EventOccurrence
from .network_worker import NetworkWorker
from .source_registry import SourceRegistry
from .sync_state import (
    DEFAULT_POLICY,
    RETRY_LIMIT_EXCEEDED,
    BackoffPolicy,
    SyncMetadata,
    SyncPhase,
    is_gated,
    new_metadata,
    phase_of,
    record_failure,
    record_success,
    reset_retry,
)


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Occurrences kept around the sync time
DEFAULT_WINDOW_PAST = timedelta(days=30)
DEFAULT_WINDOW_FUTURE = timedelta(days=365)


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


@dataclass
class SyncResult:
    """Outcome of one syncSource call."""
    source_id: str
    success: bool
    count: int = 0
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "sourceId": self.source_id,
            "success": self.success,
            "count": self.count,
            "error": self.error,
            "skipped": self.skipped,
        }


class SyncOrchestrator:
    """
    Runs sync attempts for calendar sources.

    A failed fetch never touches the event cache: the last good snapshot of
    the source stays queryable while the retry counter and backoff schedule
    in its SyncMetadata advance.

    Args:
        registry: Source registry to read sources and calendars from
        storage: Event cache and metadata store
        materializer: Expands raw calendar objects into occurrences
        policy: Retry limit and backoff schedule
        clock: Returns the current UTC time
        ics_fetcher: Callable with the signature of fetch_ics
        caldav_factory: Callable building a CalDAVClient-like object
        max_workers: Number of sources synced in parallel by sync_all_sources
        timeout: Default per-request timeout in seconds
        window_past: How far before now occurrences are kept; None for no limit
        window_future: How far after now occurrences are kept; None for no limit
    """

    def __init__(
        self,
        registry: SourceRegistry,
        storage: EventStorageBackend,
        materializer: Optional[OccurrenceMaterializer] = None,
        policy: BackoffPolicy = DEFAULT_POLICY,
        clock: Clock = utc_now,
        ics_fetcher: Callable[..., str] = fetch_ics,
        caldav_factory: Callable[..., CalDAVClient] = CalDAVClient,
        max_workers: int = 4,
        timeout: float = DEFAULT_TIMEOUT,
        window_past: Optional[timedelta] = DEFAULT_WINDOW_PAST,
        window_future: Optional[timedelta] = DEFAULT_WINDOW_FUTURE,
    ):
        self.registry = registry
        self.storage = storage
        self.materializer = materializer or OccurrenceMaterializer()
        self.policy = policy
        self.clock = clock
        self.ics_fetcher = ics_fetcher
        self.caldav_factory = caldav_factory
        self.timeout = timeout
        self.window_past = window_past
        self.window_future = window_future

        self._worker = NetworkWorker(max_workers=max_workers)
        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()
        self._in_flight: set[str] = set()

    def _lock_for(self, source_id: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(source_id)
            if lock is None:
                lock = self._locks[source_id] = Lock()
            return lock

    # ==================== Sync ====================

    def sync_source(self, source_id: str, timeout: Optional[float] = None) -> SyncResult:
        """
        Sync one source.

        Blocks while another sync of the same source is in flight.

        Raises:
            SourceNotFound: if the source is missing or deactivated.
        """
        source = self.registry.get_active_source(source_id)
        with self._lock_for(source_id):
            with self._locks_guard:
                self._in_flight.add(source_id)
            try:
                return self._sync_locked(source, timeout or self.timeout)
            finally:
                with self._locks_guard:
                    self._in_flight.discard(source_id)

    def _sync_locked(self, source: CalendarSource, timeout: float) -> SyncResult:
        metadata = self.storage.load_sync_metadata(source.id) or new_metadata(source.id)

        if is_gated(metadata, self.clock(), self.policy):
            logger.info(
                "Skipping %s: %d failed attempts, next retry at %s",
                source.name, metadata.retry_count, metadata.next_retry_time,
            )
            return SyncResult(source.id, success=False, error=RETRY_LIMIT_EXCEEDED, skipped=True)

        if not source.enabled:
            logger.info("Source %s is disabled, nothing to fetch", source.name)
            return SyncResult(source.id, success=True)

        logger.info("Syncing %s (%s)", source.name, source.source_type)
        calendars = self.registry.enabled_calendars(source.id)
        try:
            if source.requires_auth and source.password_error:
                raise ConfigError(f"Source {source.name}: {source.password_error}")
            if source.is_caldav:
                occurrences = self._fetch_caldav(source, calendars, timeout)
            else:
                occurrences = self._fetch_ics(source, calendars, timeout)
            count = self.storage.replace_source_events(source.id, occurrences)
        except (TransportFailure, sqlite3.IntegrityError, ConfigError) as e:
            return self._fail(source, metadata, str(e))
        except Exception as e:
            logger.exception("Unexpected error while syncing %s", source.name)
            return self._fail(source, metadata, f"{type(e).__name__}: {e}")

        self.storage.save_sync_metadata(record_success(metadata, self.clock()))
        logger.info("Synced %s: %d occurrences", source.name, count)
        return SyncResult(source.id, success=True, count=count)

    def _fail(self, source: CalendarSource, metadata: SyncMetadata, error: str) -> SyncResult:
        """Record a failed attempt; the cached events are left untouched."""
        metadata = record_failure(metadata, error, self.clock(), self.policy)
        self.storage.save_sync_metadata(metadata)
        logger.error(
            "Sync of %s failed (attempt %d, next retry at %s): %s",
            source.name, metadata.retry_count, metadata.next_retry_time, error,
        )
        return SyncResult(source.id, success=False, error=error)

    def _window(self) -> tuple[Optional[datetime], Optional[datetime]]:
        now = self.clock()
        start = now - self.window_past if self.window_past is not None else None
        end = now + self.window_future if self.window_future is not None else None
        return start, end

    def _materialize_object(
        self, text: str, source: CalendarSource, calendar: Calendar
    ) -> list[EventOccurrence]:
        window_start, window_end = self._window()
        try:
            return self.materializer.materialize(
                text, calendar.name, calendar.id, window_start, window_end, source_id=source.id
            )
        except MalformedCalendarData as e:
            logger.warning("Skipping malformed object in %s/%s: %s", source.name, calendar.name, e)
            return []

    def _fetch_ics(
        self, source: CalendarSource, calendars: list[Calendar], timeout: float
    ) -> list[EventOccurrence]:
        """
        Fetch and materialize one feed per calendar.

        Every calendar is attempted; the first transport failure is raised
        afterwards so the source as a whole fails.
        """
        occurrences: list[EventOccurrence] = []
        failures: list[TransportFailure] = []
        for calendar in calendars:
            try:
                text = self.ics_fetcher(calendar.calendar_url, auth=source.auth, timeout=timeout)
            except TransportFailure as e:
                logger.error("Failed to fetch feed %s: %s", calendar.calendar_url, e)
                failures.append(e)
                continue
            occurrences.extend(self._materialize_object(text, source, calendar))

        if failures:
            raise failures[0]
        return occurrences

    def _fetch_caldav(
        self, source: CalendarSource, calendars: list[Calendar], timeout: float
    ) -> list[EventOccurrence]:
        """
        Fetch and materialize the enabled calendars of a CalDAV account.

        Listing the remote calendars must succeed; a failure on a single
        calendar is logged and that calendar skipped.
        """
        username, password = source.auth or ("", "")
        client = self.caldav_factory(source.url, username=username, password=password, timeout=timeout)
        occurrences: list[EventOccurrence] = []
        try:
            remote = client.get_calendars()
            for calendar in calendars:
                match = client.find_calendar(remote, calendar.calendar_url)
                if match is None:
                    logger.warning(
                        "Calendar %s (%s) not found on %s, skipping",
                        calendar.name, calendar.calendar_url, source.url,
                    )
                    continue
                try:
                    objects = client.get_calendar_objects(match)
                except TransportFailure as e:
                    logger.error("Failed to fetch calendar %s: %s", calendar.name, e)
                    continue
                for text in objects:
                    occurrences.extend(self._materialize_object(text, source, calendar))
        finally:
            client.close()
        return occurrences

    def sync_all_sources(self, timeout: Optional[float] = None) -> list[SyncResult]:
        """
        Sync every active, enabled source in parallel.

        Never raises for a single source: its failure shows up in its result.
        """
        sources = self.registry.list_syncable_sources()
        futures = [
            (source.id, self._worker.submit(f"sync:{source.id}", self.sync_source, source.id, timeout))
            for source in sources
        ]

        results = []
        for source_id, future in futures:
            try:
                results.append(future.result())
            except Exception as e:
                # Already logged by the worker
                results.append(SyncResult(source_id, success=False, error=f"{type(e).__name__}: {e}"))

        succeeded = sum(1 for result in results if result.success)
        logger.info("Sync cycle finished: %d/%d sources succeeded", succeeded, len(results))
        return results

    # ==================== Status ====================

    def reset_retry(self, source_id: str) -> SyncMetadata:
        """
        Clear the retry counter of a source so it is eligible again.

        Raises:
            SourceNotFound: if no such source exists.
        """
        if self.registry.get_source(source_id) is None:
            raise SourceNotFound(source_id)
        metadata = self.storage.load_sync_metadata(source_id) or new_metadata(source_id)
        metadata = reset_retry(metadata)
        self.storage.save_sync_metadata(metadata)
        logger.info("Reset retry state of %s", source_id)
        return metadata

    def get_status(self, source_id: Optional[str] = None):
        """
        Sync metadata of one source (None if it never synced) or of all sources.
        """
        if source_id is not None:
            return self.storage.load_sync_metadata(source_id)
        return self.storage.list_sync_metadata()

    def phase(self, source_id: str) -> SyncPhase:
        with self._locks_guard:
            in_flight = source_id in self._in_flight
        metadata = self.storage.load_sync_metadata(source_id)
        return phase_of(metadata, self.clock(), self.policy, in_flight=in_flight)

    def shutdown(self, wait: bool = True) -> None:
        self._worker.shutdown(wait=wait)
