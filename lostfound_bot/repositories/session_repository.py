"""Persistence helpers for per-user conversation state."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import replace
from typing import Any, Dict, Optional

from ..database import Database, isoformat
from ..errors import StaleSessionError
from ..models import Session

LOGGER = logging.getLogger(__name__)

IDLE_STEP = "idle"


def _row_to_session(row: Any) -> Session:
    try:
        payload = json.loads(row["payload"] or "{}")
    except ValueError:
        LOGGER.warning("Discarding unreadable payload for user_id=%s", row["user_id"])
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    return Session(
        user_id=row["user_id"],
        step=row["step"],
        flow=row["flow"],
        payload=payload,
        version=row["version"],
        updated_at=row["updated_at"],
    )


class SessionRepository:
    """Stores one (step, flow, payload) row per user.

    ``save`` is guarded by the row version so a session computed from a stale
    read never overwrites a newer one, and ``retire`` deletes under the same
    guard. ``put`` is an unguarded upsert for administrative writes.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    def get(self, user_id: str) -> Optional[Session]:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT user_id, step, flow, payload, version, updated_at
                FROM states
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return _row_to_session(row) if row else None

    def load(self, user_id: str) -> Session:
        """Returns the stored session, or an idle one at version 0."""

        session = self.get(user_id)
        if session is None:
            return Session(user_id=user_id, step=IDLE_STEP, flow=None, payload={})
        return session

    def save(
        self,
        session: Session,
        *,
        step: str,
        flow: Optional[str],
        payload: Dict[str, Any],
    ) -> Session:
        updated_at = isoformat()
        payload_json = json.dumps(payload)
        with self._db.connection() as conn:
            if session.version == 0:
                try:
                    conn.execute(
                        """
                        INSERT INTO states (user_id, step, flow, payload, version, updated_at)
                        VALUES (?, ?, ?, ?, 1, ?)
                        """,
                        (session.user_id, step, flow, payload_json, updated_at),
                    )
                except sqlite3.IntegrityError:
                    LOGGER.warning("Concurrent session create for user_id=%s", session.user_id)
                    raise StaleSessionError(session.user_id, session.version) from None
            else:
                cursor = conn.execute(
                    """
                    UPDATE states
                    SET step = ?,
                        flow = ?,
                        payload = ?,
                        version = version + 1,
                        updated_at = ?
                    WHERE user_id = ? AND version = ?
                    """,
                    (step, flow, payload_json, updated_at, session.user_id, session.version),
                )
                if cursor.rowcount == 0:
                    LOGGER.warning(
                        "Stale session for user_id=%s at version %s", session.user_id, session.version
                    )
                    raise StaleSessionError(session.user_id, session.version)
            conn.commit()
        return replace(
            session,
            step=step,
            flow=flow,
            payload=payload,
            version=session.version + 1,
            updated_at=updated_at,
        )

    def put(self, user_id: str, *, step: str, flow: Optional[str], payload: Dict[str, Any]) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO states (user_id, step, flow, payload, version, updated_at)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    step = excluded.step,
                    flow = excluded.flow,
                    payload = excluded.payload,
                    version = states.version + 1,
                    updated_at = excluded.updated_at
                """,
                (user_id, step, flow, json.dumps(payload), isoformat()),
            )
            conn.commit()

    def delete(self, user_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute("DELETE FROM states WHERE user_id = ?", (user_id,))
            conn.commit()

    def retire(self, session: Session) -> None:
        """Deletes the row only if it still holds ``session.version``."""

        if session.version == 0:
            return
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM states WHERE user_id = ? AND version = ?",
                (session.user_id, session.version),
            )
            if cursor.rowcount == 0:
                LOGGER.warning("Stale finish for user_id=%s at version %s", session.user_id, session.version)
                raise StaleSessionError(session.user_id, session.version)
            conn.commit()
