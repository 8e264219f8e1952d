"""Persistence helpers for platform users and their contact details."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Optional

from ..database import Database, isoformat
from ..models import UserContact

LOGGER = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Brings a shared phone number to ``+7XXXXXXXXXX`` or international form."""

    if not value:
        return None
    raw = str(value).strip()
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) == 11 and digits[0] in ("7", "8"):
        return f"+7{digits[1:]}"
    if len(digits) == 10:
        return f"+7{digits}"
    if raw.startswith("+") and len(digits) >= 11:
        return f"+{digits}"
    return None


class UserRepository:
    def __init__(self, database: Database) -> None:
        self._db = database

    def ensure(self, max_id: str, phone: Optional[str] = None) -> UserContact:
        max_id = str(max_id)
        normalized = normalize_phone(phone)
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id, max_id, phone FROM users WHERE max_id = ?",
                (max_id,),
            ).fetchone()
            if row:
                current_phone = row["phone"]
                if normalized and normalized != current_phone:
                    conn.execute("UPDATE users SET phone = ? WHERE id = ?", (normalized, row["id"]))
                    conn.commit()
                    current_phone = normalized
                return UserContact(id=row["id"], max_id=row["max_id"], phone=current_phone)
            user_id = str(uuid.uuid4())
            conn.execute(
                "INSERT INTO users (id, max_id, phone, created_at) VALUES (?, ?, ?, ?)",
                (user_id, max_id, normalized, isoformat()),
            )
            conn.commit()
        LOGGER.info("Registered new user max_id=%s", max_id)
        return UserContact(id=user_id, max_id=max_id, phone=normalized)

    def update_phone(self, max_id: str, phone: Optional[str]) -> Optional[UserContact]:
        """Stores a shared phone; unrecognised numbers are ignored."""

        normalized = normalize_phone(phone)
        if not normalized:
            LOGGER.info("Ignoring unrecognised phone shared by max_id=%s", max_id)
            return None
        return self.ensure(max_id, normalized)

    def get(self, user_id: str) -> Optional[UserContact]:
        if not user_id:
            return None
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id, max_id, phone FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return UserContact(id=row["id"], max_id=row["max_id"], phone=row["phone"])

    def find_by_max_id(self, max_id: str) -> Optional[UserContact]:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id, max_id, phone FROM users WHERE max_id = ?",
                (str(max_id),),
            ).fetchone()
        if not row:
            return None
        return UserContact(id=row["id"], max_id=row["max_id"], phone=row["phone"])
