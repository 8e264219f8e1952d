"""Low-level SQLite access."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .errors import PersistenceError

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        max_id TEXT NOT NULL UNIQUE,
        phone TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS listings (
        id TEXT PRIMARY KEY,
        author_id TEXT NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('LOST', 'FOUND')),
        category TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        lat REAL,
        lng REAL,
        occurred_at TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_listings_tcs
    ON listings (type, category, status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS photos (
        id TEXT PRIMARY KEY,
        listing_id TEXT NOT NULL,
        url TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS secrets (
        id TEXT PRIMARY KEY,
        listing_id TEXT NOT NULL,
        cipher TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id TEXT PRIMARY KEY,
        lost_listing_id TEXT,
        found_listing_id TEXT,
        initiator_id TEXT NOT NULL,
        holder_id TEXT NOT NULL,
        claimant_id TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        last_message_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_chats_listings
    ON chats (lost_listing_id, found_listing_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_members (
        chat_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL,
        joined_at TEXT NOT NULL,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL,
        sender_id TEXT NOT NULL,
        body TEXT,
        meta TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'SENT',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        chat_id TEXT,
        listing_id TEXT,
        type TEXT NOT NULL,
        title TEXT,
        body TEXT,
        payload TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'UNREAD',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        read_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_notifications_user
    ON notifications (user_id, type, chat_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS volunteer_assignments (
        id TEXT PRIMARY KEY,
        listing_id TEXT NOT NULL,
        volunteer_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (listing_id, volunteer_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS states (
        user_id TEXT PRIMARY KEY,
        step TEXT NOT NULL,
        flow TEXT,
        payload TEXT NOT NULL DEFAULT '{}',
        version INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT NOT NULL
    )
    """,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: Optional[datetime] = None) -> str:
    value = dt or utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class Database:
    """Encapsulates access to the SQLite database file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database at {self._path}") from exc
        conn.execute("PRAGMA foreign_keys = ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    def initialise(self) -> None:
        with self.connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
