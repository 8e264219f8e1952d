"""Persistence helpers for user notifications."""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from ..database import Database, isoformat
from ..models import Notification, NotificationStatus

_COLUMNS = """
    id, user_id, chat_id, listing_id, type, title, body, payload, status,
    created_at, updated_at, read_at
"""

_PATCHABLE = ("title", "body", "status", "payload", "listing_id")


def _row_to_notification(row: Any) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        chat_id=row["chat_id"],
        listing_id=row["listing_id"],
        type=row["type"],
        title=row["title"],
        body=row["body"],
        payload=json.loads(row["payload"] or "{}"),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        read_at=row["read_at"],
    )


class NotificationRepository:
    def __init__(self, database: Database) -> None:
        self._db = database

    def create(
        self,
        user_id: str,
        type: str,
        *,
        chat_id: Optional[str] = None,
        listing_id: Optional[str] = None,
        title: Optional[str] = None,
        body: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        status: str = NotificationStatus.UNREAD,
    ) -> Notification:
        now = isoformat()
        notification = Notification(
            id=str(uuid.uuid4()),
            user_id=user_id,
            chat_id=chat_id,
            listing_id=listing_id,
            type=type,
            title=title,
            body=body,
            payload=dict(payload or {}),
            status=status,
            created_at=now,
            updated_at=now,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO notifications (
                    id, user_id, chat_id, listing_id, type, title, body, payload, status,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.id,
                    user_id,
                    chat_id,
                    listing_id,
                    type,
                    title,
                    body,
                    json.dumps(notification.payload),
                    status,
                    now,
                    now,
                ),
            )
            conn.commit()
        return notification

    def latest_by_key(self, user_id: str, type: str, chat_id: Optional[str]) -> Optional[Notification]:
        """Most recent notification for ``(user_id, type, chat_id)``; a ``None`` chat matches NULL."""

        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM notifications
                WHERE user_id = ? AND type = ? AND chat_id IS ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (user_id, type, chat_id),
            ).fetchone()
        return _row_to_notification(row) if row else None

    def get(self, notification_id: str) -> Optional[Notification]:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM notifications WHERE id = ?",
                (notification_id,),
            ).fetchone()
        return _row_to_notification(row) if row else None

    def patch(self, notification_id: str, fields: Dict[str, Any]) -> Optional[Notification]:
        assignments: List[str] = []
        params: List[Any] = []
        for name in _PATCHABLE:
            if name not in fields:
                continue
            value = fields[name]
            if name == "payload":
                value = json.dumps(dict(value or {}))
            assignments.append(f"{name} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(isoformat())
        params.append(notification_id)
        with self._db.connection() as conn:
            conn.execute(
                f"UPDATE notifications SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            conn.commit()
        return self.get(notification_id)

    def mark_read(self, notification_ids: List[str]) -> int:
        """Moves UNREAD records to READ. Other statuses, ARCHIVED included, are left alone."""

        if not notification_ids:
            return 0
        placeholders = ", ".join("?" for _ in notification_ids)
        now = isoformat()
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE notifications
                SET status = ?, read_at = ?, updated_at = ?
                WHERE id IN ({placeholders}) AND status = ?
                """,
                (NotificationStatus.READ, now, now, *notification_ids, NotificationStatus.UNREAD),
            )
            conn.commit()
        return cursor.rowcount

    def archive(self, notification_id: str, user_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE notifications
                SET status = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (NotificationStatus.ARCHIVED, isoformat(), notification_id, user_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def list_for_user(self, user_id: str, *, limit: int = 10, include_archived: bool = False) -> List[Notification]:
        order_case = " ".join(
            f"WHEN '{status}' THEN {index}" for index, status in enumerate(NotificationStatus.ORDER)
        )
        archived_clause = "" if include_archived else "AND status != ?"
        params: List[Any] = [user_id]
        if not include_archived:
            params.append(NotificationStatus.ARCHIVED)
        params.append(max(1, int(limit)))
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM notifications
                WHERE user_id = ? {archived_clause}
                ORDER BY CASE status {order_case} ELSE {len(NotificationStatus.ORDER)} END,
                         created_at DESC,
                         rowid DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [_row_to_notification(row) for row in rows]

    def users_with_listing_notification(self, listing_id: str) -> List[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT user_id FROM notifications
                WHERE listing_id = ? OR payload LIKE ?
                """,
                (listing_id, f"%{listing_id}%"),
            ).fetchall()
        return [row["user_id"] for row in rows]

    def action_chat_ids(self, user_id: str, type: str) -> List[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT chat_id FROM notifications
                WHERE user_id = ? AND type = ? AND status = ? AND chat_id IS NOT NULL
                ORDER BY created_at ASC
                """,
                (user_id, type, NotificationStatus.ACTION),
            ).fetchall()
        seen: List[str] = []
        for row in rows:
            if row["chat_id"] not in seen:
                seen.append(row["chat_id"])
        return seen
