"""Persistence helpers for verification chats, members and transcripts."""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from ..database import Database, isoformat
from ..models import Chat, ChatMember, ChatMessage, ChatRole, ChatStatus, ChatType

SYSTEM_SENDER = "system"

_CHAT_COLUMNS = """
    id, lost_listing_id, found_listing_id, initiator_id, holder_id, claimant_id,
    type, status, last_message_at, created_at
"""


def _row_to_chat(row: Any) -> Chat:
    return Chat(
        id=row["id"],
        lost_listing_id=row["lost_listing_id"],
        found_listing_id=row["found_listing_id"],
        initiator_id=row["initiator_id"],
        holder_id=row["holder_id"],
        claimant_id=row["claimant_id"],
        type=row["type"],
        status=row["status"],
        last_message_at=row["last_message_at"],
        created_at=row["created_at"],
    )


class ChatRepository:
    def __init__(self, database: Database) -> None:
        self._db = database

    def get_or_create_owner_check(
        self,
        *,
        lost_listing_id: str,
        found_listing_id: str,
        initiator_id: str,
        holder_id: str,
        claimant_id: str,
    ) -> Chat:
        """Returns the open owner-check chat for the listing pair, creating it if needed."""

        now = isoformat()
        with self._db.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"""
                SELECT {_CHAT_COLUMNS}
                FROM chats
                WHERE lost_listing_id = ? AND found_listing_id = ? AND type = ?
                  AND status IN (?, ?)
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (lost_listing_id, found_listing_id, ChatType.OWNER_CHECK, *ChatStatus.OPEN),
            ).fetchone()
            if row:
                chat = _row_to_chat(row)
            else:
                chat = Chat(
                    id=str(uuid.uuid4()),
                    lost_listing_id=lost_listing_id,
                    found_listing_id=found_listing_id,
                    initiator_id=initiator_id,
                    holder_id=holder_id,
                    claimant_id=claimant_id,
                    type=ChatType.OWNER_CHECK,
                    status=ChatStatus.PENDING,
                    last_message_at=None,
                    created_at=now,
                )
                conn.execute(
                    """
                    INSERT INTO chats (
                        id, lost_listing_id, found_listing_id, initiator_id, holder_id, claimant_id,
                        type, status, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chat.id,
                        lost_listing_id,
                        found_listing_id,
                        initiator_id,
                        holder_id,
                        claimant_id,
                        chat.type,
                        chat.status,
                        now,
                        now,
                    ),
                )
            for user_id, role in ((claimant_id, ChatRole.CLAIMANT), (holder_id, ChatRole.HOLDER)):
                conn.execute(
                    """
                    INSERT INTO chat_members (chat_id, user_id, role, joined_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (chat_id, user_id) DO UPDATE SET role = excluded.role
                    """,
                    (chat.id, user_id, role, now),
                )
            conn.commit()
        return chat

    def find_closed_owner_check(self, lost_listing_id: str, found_listing_id: str) -> Optional[Chat]:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_CHAT_COLUMNS}
                FROM chats
                WHERE lost_listing_id = ? AND found_listing_id = ? AND type = ? AND status = ?
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (lost_listing_id, found_listing_id, ChatType.OWNER_CHECK, ChatStatus.CLOSED),
            ).fetchone()
        return _row_to_chat(row) if row else None

    def get(self, chat_id: str) -> Optional[Chat]:
        if not chat_id:
            return None
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_CHAT_COLUMNS} FROM chats WHERE id = ?",
                (chat_id,),
            ).fetchone()
        return _row_to_chat(row) if row else None

    def members(self, chat_id: str) -> List[ChatMember]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT cm.chat_id, cm.user_id, cm.role, u.max_id
                FROM chat_members cm
                LEFT JOIN users u ON u.id = cm.user_id
                WHERE cm.chat_id = ?
                """,
                (chat_id,),
            ).fetchall()
        return [
            ChatMember(chat_id=row["chat_id"], user_id=row["user_id"], role=row["role"], max_id=row["max_id"])
            for row in rows
        ]

    def member_with_role(self, chat_id: str, role: str) -> Optional[ChatMember]:
        for member in self.members(chat_id):
            if member.role == role:
                return member
        return None

    def transition(self, chat_id: str, from_statuses: tuple[str, ...], to_status: str) -> bool:
        """Moves the chat to ``to_status`` only if it is currently in ``from_statuses``."""

        placeholders = ", ".join("?" for _ in from_statuses)
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE chats
                SET status = ?, updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (to_status, isoformat(), chat_id, *from_statuses),
            )
            conn.commit()
        return cursor.rowcount > 0

    def append_message(
        self,
        chat_id: str,
        sender_id: str,
        body: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        now = isoformat()
        message = ChatMessage(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            sender_id=sender_id,
            body=body,
            meta=dict(meta or {}),
            created_at=now,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_messages (id, chat_id, sender_id, body, meta, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message.id, chat_id, sender_id, body, json.dumps(message.meta), now),
            )
            conn.execute("UPDATE chats SET last_message_at = ? WHERE id = ?", (now, chat_id))
            conn.commit()
        return message

    def append_system_message(self, chat_id: str, body: str, meta: Optional[Dict[str, Any]] = None) -> ChatMessage:
        return self.append_message(chat_id, SYSTEM_SENDER, body, {**(meta or {}), "system": True})

    def transcript(self, chat_id: str) -> List[ChatMessage]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, chat_id, sender_id, body, meta, created_at
                FROM chat_messages
                WHERE chat_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (chat_id,),
            ).fetchall()
        return [
            ChatMessage(
                id=row["id"],
                chat_id=row["chat_id"],
                sender_id=row["sender_id"],
                body=row["body"],
                meta=json.loads(row["meta"] or "{}"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
