"""
Persistent event cache and sync metadata store.

Abstract base class and the SQLite implementation. A source's cached
occurrences are only ever replaced as a whole, inside one transaction.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from . import database
from .database import DbPath
from .models import DEFAULT_CALENDAR_COLOR, EventOccurrence
from .sync_state import SyncMetadata, SyncStatus
from .timezone_utils import epoch_ms, from_epoch_ms


logger = logging.getLogger(__name__)

RECURRING_MARKER = "RECURRING"


class EventStorageBackend(ABC):
    """
    Abstract base class for the event cache.

    Implementations must make replace_source_events all-or-nothing.
    """

    @abstractmethod
    def replace_source_events(self, source_id: str, occurrences: list[EventOccurrence]) -> int:
        """Atomically swap a source's cached occurrences for a new set."""
        pass

    @abstractmethod
    def delete_source_events(self, source_id: str) -> int:
        """Remove every cached occurrence of a source."""
        pass

    @abstractmethod
    def query_events(
        self,
        source_id: Optional[str] = None,
        calendar_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[EventOccurrence]:
        """Occurrences overlapping [start, end], ordered by start."""
        pass

    @abstractmethod
    def count_events(self, source_id: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[EventOccurrence]:
        pass

    @abstractmethod
    def load_sync_metadata(self, source_id: str) -> Optional[SyncMetadata]:
        """Load metadata for a source."""
        pass

    @abstractmethod
    def save_sync_metadata(self, metadata: SyncMetadata) -> None:
        """Save metadata for a source."""
        pass

    @abstractmethod
    def list_sync_metadata(self) -> list[SyncMetadata]:
        pass


class SqliteEventStorage(EventStorageBackend):
    """
    SQLite-backed event cache.

    Structure:
    - events: one row per occurrence, keyed by occurrence id
    - sync_metadata: one row per source
    """

    def __init__(self, db_path: DbPath):
        self.db_path = db_path

    # ==================== Events ====================

    def replace_source_events(self, source_id: str, occurrences: list[EventOccurrence]) -> int:
        """
        Delete every cached occurrence of the source and insert the new set.

        Runs as a single transaction: on any error the previous set is kept.
        Ids are unique across the whole cache, so a row owned by another
        source with the same id is overwritten.

        Returns:
            Number of occurrences written.
        """
        now = database.now_ms()

        with database.transaction(self.db_path) as conn:
            # Keep first-seen timestamps of occurrences that survive the swap
            created = {
                row["id"]: row["created_at"]
                for row in conn.execute(
                    "SELECT id, created_at FROM events WHERE source_id = ?", (source_id,)
                )
            }
            rows = [
                self._to_row(source_id, occurrence, created.get(occurrence.id, now), now)
                for occurrence in occurrences
            ]
            conn.execute("DELETE FROM events WHERE source_id = ?", (source_id,))
            conn.executemany(
                """
                INSERT OR REPLACE INTO events (
                    id, source_id, calendar_id, title, description, location,
                    start_time, end_time, timezone, recurrence_rule, is_all_day,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

        logger.debug("Replaced events for %s with %d occurrences", source_id, len(rows))
        return len(rows)

    @staticmethod
    def _to_row(source_id: str, occurrence: EventOccurrence, created_at: int, now: int) -> tuple:
        if occurrence.all_day:
            timezone = occurrence.timezone
        else:
            timezone = occurrence.timezone or "UTC"
        return (
            occurrence.id,
            source_id,
            occurrence.calendar_id,
            occurrence.title,
            occurrence.description or "",
            occurrence.location or "",
            epoch_ms(occurrence.start),
            epoch_ms(occurrence.end),
            timezone,
            RECURRING_MARKER if occurrence.is_recurring else None,
            1 if occurrence.all_day else 0,
            created_at,
            now,
        )

    @staticmethod
    def _from_row(row) -> EventOccurrence:
        keys = row.keys()
        return EventOccurrence(
            id=row["id"],
            source_id=row["source_id"],
            calendar_id=row["calendar_id"],
            title=row["title"] or "",
            description=row["description"] or "",
            location=row["location"] or "",
            start=from_epoch_ms(row["start_time"]),
            end=from_epoch_ms(row["end_time"]),
            all_day=bool(row["is_all_day"]),
            timezone=row["timezone"],
            is_recurring=row["recurrence_rule"] is not None,
            calendar_name=(row["calendar_name"] or "") if "calendar_name" in keys else "",
            color=(row["color"] or DEFAULT_CALENDAR_COLOR) if "color" in keys else None,
            created_at=from_epoch_ms(row["created_at"]),
            updated_at=from_epoch_ms(row["updated_at"]),
        )

    def delete_source_events(self, source_id: str) -> int:
        with database.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM events WHERE source_id = ?", (source_id,))
            return cursor.rowcount

    def query_events(
        self,
        source_id: Optional[str] = None,
        calendar_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[EventOccurrence]:
        """
        Query cached occurrences.

        Args:
            source_id: Only occurrences of this source
            calendar_id: Only occurrences of this calendar
            start: Keep occurrences whose end is at or after this instant
            end: Keep occurrences whose start is at or before this instant

        Returns:
            Occurrences ordered by start ascending, with calendar color and name.
        """
        sql = """
            SELECT e.*, c.color AS color, c.name AS calendar_name
            FROM events e
            LEFT JOIN calendars c ON e.calendar_id = c.id
            WHERE 1 = 1
        """
        params: list = []
        if source_id:
            sql += " AND e.source_id = ?"
            params.append(source_id)
        if calendar_id:
            sql += " AND e.calendar_id = ?"
            params.append(calendar_id)
        if start is not None:
            sql += " AND e.end_time >= ?"
            params.append(epoch_ms(start))
        if end is not None:
            sql += " AND e.start_time <= ?"
            params.append(epoch_ms(end))
        sql += " ORDER BY e.start_time ASC, e.id ASC"

        with database.connect(self.db_path) as conn:
            return [self._from_row(row) for row in conn.execute(sql, params)]

    def count_events(self, source_id: Optional[str] = None) -> int:
        with database.connect(self.db_path) as conn:
            if source_id:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM events WHERE source_id = ?", (source_id,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS count FROM events").fetchone()
            return row["count"]

    def get_event(self, event_id: str) -> Optional[EventOccurrence]:
        with database.connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT e.*, c.color AS color, c.name AS calendar_name
                FROM events e
                LEFT JOIN calendars c ON e.calendar_id = c.id
                WHERE e.id = ?
                """,
                (event_id,),
            ).fetchone()
        return self._from_row(row) if row else None

    # ==================== Sync Metadata ====================

    @staticmethod
    def _metadata_from_row(row) -> SyncMetadata:
        status = row["last_sync_status"]
        return SyncMetadata(
            source_id=row["source_id"],
            last_sync_time=from_epoch_ms(row["last_sync_time"]),
            last_sync_status=SyncStatus(status) if status else SyncStatus.NEVER,
            last_error=row["last_error"],
            retry_count=row["retry_count"] or 0,
            next_retry_time=from_epoch_ms(row["next_retry_time"]),
            sync_token=row["sync_token"],
            ctag=row["ctag"],
        )

    def load_sync_metadata(self, source_id: str) -> Optional[SyncMetadata]:
        with database.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM sync_metadata WHERE source_id = ?", (source_id,)
            ).fetchone()
        return self._metadata_from_row(row) if row else None

    def save_sync_metadata(self, metadata: SyncMetadata) -> None:
        """Insert or update the metadata row of a source."""
        with database.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO sync_metadata (
                    source_id, last_sync_time, last_sync_status, last_error,
                    retry_count, next_retry_time, sync_token, ctag
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    last_sync_time = excluded.last_sync_time,
                    last_sync_status = excluded.last_sync_status,
                    last_error = excluded.last_error,
                    retry_count = excluded.retry_count,
                    next_retry_time = excluded.next_retry_time,
                    sync_token = excluded.sync_token,
                    ctag = excluded.ctag
                """,
                (
                    metadata.source_id,
                    epoch_ms(metadata.last_sync_time) if metadata.last_sync_time else None,
                    metadata.last_sync_status.value,
                    metadata.last_error,
                    metadata.retry_count,
                    epoch_ms(metadata.next_retry_time) if metadata.next_retry_time else None,
                    metadata.sync_token,
                    metadata.ctag,
                ),
            )

    def list_sync_metadata(self) -> list[SyncMetadata]:
        with database.connect(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM sync_metadata ORDER BY source_id").fetchall()
        return [self._metadata_from_row(row) for row in rows]


def create_storage_backend(db_path: Optional[DbPath] = None) -> EventStorageBackend:
    """Factory function to create a storage backend."""
    if db_path is None:
        db_path = database.get_default_database_path()
    database.init_database(db_path)
    return SqliteEventStorage(db_path)
