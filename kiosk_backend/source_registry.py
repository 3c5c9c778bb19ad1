"""
Source registry: configured calendar sources and their calendars.

Passwords are encrypted at rest with crypto.encrypt_password and only
decrypted when a source is loaded for syncing.
"""

import logging
import sqlite3
import uuid
from typing import Any, Optional, Union

from . import database
from .crypto import decrypt_password, encrypt_password
from .database import DbPath
from .errors import ConfigError, SourceNotFound
from .models import (
    DEFAULT_CALENDAR_COLOR,
    Calendar,
    CalendarSource,
    normalize_source_type,
)
from .timezone_utils import from_epoch_ms


logger = logging.getLogger(__name__)


def _flag(value: Any, default: bool) -> int:
    if value is None:
        return 1 if default else 0
    return 1 if value else 0


class SourceRegistry:
    """
    CRUD over calendar_sources and calendars.

    Calendars are never edited one by one: whenever a source's calendar list
    is given, every existing calendar of that source is deleted and the new
    list inserted.
    """

    def __init__(self, db_path: DbPath):
        self.db_path = db_path

    # ==================== Row Mapping ====================

    @staticmethod
    def _calendar_from_row(row) -> Calendar:
        return Calendar(
            id=row["id"],
            source_id=row["source_id"],
            name=row["name"],
            calendar_url=row["calendar_url"],
            color=row["color"] or DEFAULT_CALENDAR_COLOR,
            enabled=bool(row["enabled"]),
            created_at=from_epoch_ms(row["created_at"]),
            updated_at=from_epoch_ms(row["updated_at"]),
        )

    def _source_from_row(self, conn, row) -> CalendarSource:
        calendars = [
            self._calendar_from_row(cal_row)
            for cal_row in conn.execute(
                "SELECT * FROM calendars WHERE source_id = ? ORDER BY created_at, name",
                (row["id"],),
            )
        ]
        password, password_error = "", None
        try:
            password = decrypt_password(row["password_encrypted"])
        except ConfigError as e:
            logger.error("Source %s (%s): %s", row["name"], row["id"], e)
            password_error = str(e)
        return CalendarSource(
            id=row["id"],
            name=row["name"],
            url=row["server_url"],
            username=row["username"],
            password=password,
            source_type=row["source_type"] or "caldav",
            requires_auth=bool(row["requires_auth"]),
            is_public=bool(row["is_public"]),
            enabled=bool(row["enabled"]),
            is_active=bool(row["is_active"]),
            calendars=calendars,
            created_at=from_epoch_ms(row["created_at"]),
            updated_at=from_epoch_ms(row["updated_at"]),
            password_error=password_error,
        )

    @staticmethod
    def _insert_calendars(conn, source_id: str, calendars: list[dict], now: int) -> None:
        for data in calendars:
            url = data.get("calendar_url") or data.get("url")
            if not url:
                raise ValueError(f"Calendar '{data.get('name', '')}' has no URL")
            conn.execute(
                """
                INSERT INTO calendars (
                    id, source_id, name, calendar_url, color, enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data.get("id") or str(uuid.uuid4()),
                    source_id,
                    data.get("name") or url,
                    url,
                    data.get("color") or DEFAULT_CALENDAR_COLOR,
                    _flag(data.get("enabled"), True),
                    now,
                    now,
                ),
            )

    # ==================== Sources ====================

    def create_source(self, data: dict) -> CalendarSource:
        """
        Create a source together with its calendars.

        Args:
            data: name, url, username, password, source_type, requires_auth,
                is_public, enabled, calendars (list of dicts) and optional id

        Raises:
            ValueError: if a required field is missing or the type is unknown.
        """
        name = data.get("name")
        url = data.get("url") or data.get("server_url")
        if not name or not url:
            raise ValueError("name and url are required")

        source_id = data.get("id") or str(uuid.uuid4())
        now = database.now_ms()
        with database.transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO calendar_sources (
                    id, name, server_url, username, password_encrypted,
                    source_type, requires_auth, is_public, is_active, enabled,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    source_id,
                    name,
                    url,
                    data.get("username") or "",
                    encrypt_password(data.get("password")),
                    normalize_source_type(data.get("source_type")),
                    _flag(data.get("requires_auth"), True),
                    _flag(data.get("is_public"), False),
                    _flag(data.get("enabled"), True),
                    now,
                    now,
                ),
            )
            self._insert_calendars(conn, source_id, data.get("calendars") or [], now)

        logger.info("Created source %s (%s)", name, source_id)
        return self.get_source(source_id)

    def update_source(self, source_id: str, updates: dict) -> CalendarSource:
        """
        Partially update a source.

        Only keys present in updates are written. A 'calendars' key replaces
        the source's whole calendar list, which also drops the cached
        occurrences of the removed calendars.

        Raises:
            SourceNotFound: if no such source exists.
        """
        columns = {
            "name": ("name", lambda v: v),
            "url": ("server_url", lambda v: v),
            "server_url": ("server_url", lambda v: v),
            "username": ("username", lambda v: v or ""),
            "password": ("password_encrypted", encrypt_password),
            "source_type": ("source_type", normalize_source_type),
            "requires_auth": ("requires_auth", lambda v: 1 if v else 0),
            "is_public": ("is_public", lambda v: 1 if v else 0),
            "enabled": ("enabled", lambda v: 1 if v else 0),
        }

        assignments: dict[str, Any] = {}
        for key, (column, convert) in columns.items():
            if updates.get(key) is not None:
                assignments[column] = convert(updates[key])

        now = database.now_ms()
        with database.transaction(self.db_path) as conn:
            if conn.execute(
                "SELECT 1 FROM calendar_sources WHERE id = ?", (source_id,)
            ).fetchone() is None:
                raise SourceNotFound(source_id)

            if assignments:
                assignments["updated_at"] = now
                sql = ", ".join(f"{column} = ?" for column in assignments)
                conn.execute(
                    f"UPDATE calendar_sources SET {sql} WHERE id = ?",
                    (*assignments.values(), source_id),
                )

            if updates.get("calendars") is not None:
                conn.execute("DELETE FROM calendars WHERE source_id = ?", (source_id,))
                self._insert_calendars(conn, source_id, updates["calendars"], now)

        return self.get_source(source_id)

    def get_source(self, source_id: str) -> Optional[CalendarSource]:
        """Get a source by id, including soft-deleted ones."""
        with database.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM calendar_sources WHERE id = ?", (source_id,)
            ).fetchone()
            return self._source_from_row(conn, row) if row else None

    def get_active_source(self, source_id: str) -> CalendarSource:
        """
        Get a source that may be synced.

        Raises:
            SourceNotFound: if the source is missing or soft-deleted.
        """
        source = self.get_source(source_id)
        if source is None or not source.is_active:
            raise SourceNotFound(source_id)
        return source

    def list_sources(self, include_inactive: bool = False) -> list[CalendarSource]:
        """All sources, active ones only unless include_inactive is set."""
        sql = "SELECT * FROM calendar_sources"
        if not include_inactive:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY created_at, name"
        with database.connect(self.db_path) as conn:
            return [self._source_from_row(conn, row) for row in conn.execute(sql).fetchall()]

    def list_syncable_sources(self) -> list[CalendarSource]:
        """Active sources with the enabled flag set."""
        return [source for source in self.list_sources() if source.enabled]

    def delete_source(self, source_id: str) -> None:
        """
        Soft delete: mark the source inactive and drop its cached occurrences.

        Calendars and sync metadata are kept.

        Raises:
            SourceNotFound: if no such source exists.
        """
        with database.transaction(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE calendar_sources SET is_active = 0, updated_at = ? WHERE id = ?",
                (database.now_ms(), source_id),
            )
            if cursor.rowcount == 0:
                raise SourceNotFound(source_id)
            conn.execute("DELETE FROM events WHERE source_id = ?", (source_id,))
        logger.info("Deactivated source %s", source_id)

    def hard_delete_source(self, source_id: str) -> None:
        """Permanently remove a source; calendars, events and metadata cascade."""
        with database.connect(self.db_path) as conn:
            conn.execute("DELETE FROM calendar_sources WHERE id = ?", (source_id,))
        logger.info("Removed source %s", source_id)

    def batch_upsert(self, sources: list[dict]) -> list[Union[CalendarSource, dict]]:
        """
        Create or update several sources.

        Returns:
            One entry per input: the stored source, or {'error': message}.
        """
        results: list[Union[CalendarSource, dict]] = []
        for data in sources:
            try:
                source_id = data.get("id")
                if source_id and self.get_source(source_id) is not None:
                    results.append(self.update_source(source_id, data))
                else:
                    results.append(self.create_source(data))
            except (ValueError, SourceNotFound, sqlite3.IntegrityError) as e:
                logger.error("Failed to store source %s: %s", data.get("name", ""), e)
                results.append({"error": str(e)})
        return results

    def seed_source(self, data: dict) -> CalendarSource:
        """
        Create or refresh a source defined in the configuration file.

        data must carry a stable 'id'. The calendar list is only rewritten
        when it differs from the stored one, so restarting with an
        unchanged file keeps the cached occurrences. A seeded source that
        was deleted through the API stays deleted.
        """
        existing = self.get_source(data["id"])
        if existing is None:
            return self.create_source(data)
        if not existing.is_active:
            logger.info("Source %s was deleted, not reseeding it", existing.id)
            return existing

        updates = dict(data)
        wanted = sorted(
            (c["id"], c.get("name") or c["url"], c["url"], c.get("color") or DEFAULT_CALENDAR_COLOR,
             c.get("enabled", True))
            for c in updates.pop("calendars", None) or []
        )
        stored = sorted(
            (c.id, c.name, c.calendar_url, c.color, c.enabled) for c in existing.calendars
        )
        if wanted != stored:
            updates["calendars"] = data.get("calendars") or []
        return self.update_source(existing.id, updates)

    # ==================== Calendars ====================

    def get_calendars(self, source_id: str) -> list[Calendar]:
        with database.connect(self.db_path) as conn:
            return [
                self._calendar_from_row(row)
                for row in conn.execute(
                    "SELECT * FROM calendars WHERE source_id = ? ORDER BY created_at, name",
                    (source_id,),
                )
            ]

    def enabled_calendars(self, source_id: str) -> list[Calendar]:
        """Calendars of the source that should be fetched."""
        return [calendar for calendar in self.get_calendars(source_id) if calendar.enabled]

    def get_calendar(self, calendar_id: str) -> Optional[Calendar]:
        with database.connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM calendars WHERE id = ?", (calendar_id,)).fetchone()
        return self._calendar_from_row(row) if row else None
