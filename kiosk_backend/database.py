"""
SQLite schema and connection handling for the kiosk calendar.

One connection per unit of work. All times are stored as epoch milliseconds.
"""

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

DbPath = Union[str, Path]

_TABLES = """
CREATE TABLE IF NOT EXISTS calendar_sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    server_url TEXT NOT NULL,
    username TEXT NOT NULL,
    password_encrypted TEXT NOT NULL,
    source_type TEXT DEFAULT 'caldav',
    requires_auth INTEGER DEFAULT 1,
    is_public INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    enabled INTEGER DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS calendars (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    name TEXT NOT NULL,
    calendar_url TEXT NOT NULL,
    color TEXT DEFAULT '#3788d8',
    enabled INTEGER DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    FOREIGN KEY (source_id) REFERENCES calendar_sources(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    title TEXT,
    description TEXT,
    location TEXT,
    start_time INTEGER NOT NULL,
    end_time INTEGER NOT NULL,
    timezone TEXT,
    recurrence_rule TEXT,
    is_all_day INTEGER DEFAULT 0,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    FOREIGN KEY (source_id) REFERENCES calendar_sources(id) ON DELETE CASCADE,
    FOREIGN KEY (calendar_id) REFERENCES calendars(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sync_metadata (
    source_id TEXT PRIMARY KEY,
    last_sync_time INTEGER,
    last_sync_status TEXT,
    last_error TEXT,
    retry_count INTEGER DEFAULT 0,
    next_retry_time INTEGER,
    sync_token TEXT,
    ctag TEXT,
    FOREIGN KEY (source_id) REFERENCES calendar_sources(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at INTEGER NOT NULL
);
"""

_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_calendars_source_id ON calendars(source_id);
CREATE INDEX IF NOT EXISTS idx_events_source_id ON events(source_id);
CREATE INDEX IF NOT EXISTS idx_events_calendar_id ON events(calendar_id);
CREATE INDEX IF NOT EXISTS idx_events_start_time ON events(start_time);
CREATE INDEX IF NOT EXISTS idx_events_end_time ON events(end_time);
CREATE INDEX IF NOT EXISTS idx_events_time_range ON events(start_time, end_time);
"""


def now_ms() -> int:
    return int(time.time() * 1000)


def get_default_database_path() -> Path:
    """Get the default database path respecting XDG."""
    xdg_data = os.environ.get('XDG_DATA_HOME', os.path.expanduser('~/.local/share'))
    return Path(xdg_data) / 'kiosk-calendar' / 'calendar.db'


def get_connection(db_path: DbPath) -> sqlite3.Connection:
    """
    Open a database connection.

    The connection runs in autocommit mode; use transaction() for
    multi-statement writes.
    """
    conn = sqlite3.connect(str(db_path), timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


@contextmanager
def connect(db_path: DbPath) -> Iterator[sqlite3.Connection]:
    """Connection for a single read or single-statement write."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: DbPath) -> Iterator[sqlite3.Connection]:
    """
    All-or-nothing unit of work.

    Takes the write lock up front (BEGIN IMMEDIATE) so concurrent writers
    queue behind each other instead of failing mid-transaction.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def init_database(db_path: DbPath) -> Path:
    """
    Create the schema if needed and record the schema version.

    Returns:
        The database path.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with connect(path) as conn:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(_TABLES)
        row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
        current = row["version"] if row else None
        if current is None or current < SCHEMA_VERSION:
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (SCHEMA_VERSION, now_ms()),
            )
            logger.info("Database schema at version %d (%s)", SCHEMA_VERSION, path)
        conn.executescript(_INDEXES)

    return path


def get_schema_version(db_path: DbPath) -> int:
    with connect(db_path) as conn:
        row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
        return row["version"] or 0
