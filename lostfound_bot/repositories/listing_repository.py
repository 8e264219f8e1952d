"""Persistence helpers for listings, their photos, secrets and volunteer assignments."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from ..database import Database, isoformat
from ..errors import AuthorizationError, NotFoundError
from ..models import Listing, ListingStatus, ListingType, NewListing, StoredSecret
from ..services.matching import haversine_km

LOGGER = logging.getLogger(__name__)

MAX_PHOTOS = 3

_COLUMNS = """
    id, author_id, type, category, title, description, lat, lng, occurred_at, status, created_at
"""


def _row_to_listing(row: Any, photos: Sequence[str] = ()) -> Listing:
    return Listing(
        id=row["id"],
        author_id=row["author_id"],
        type=row["type"],
        category=row["category"],
        title=row["title"],
        description=row["description"],
        lat=row["lat"],
        lng=row["lng"],
        occurred_at=row["occurred_at"],
        status=row["status"],
        created_at=row["created_at"],
        photos=tuple(photos),
    )


class ListingRepository:
    def __init__(self, database: Database) -> None:
        self._db = database

    def create(self, author_id: str, draft: NewListing) -> Listing:
        """Persists a listing together with its photos and already-encrypted secrets."""

        listing_id = str(uuid.uuid4())
        now = isoformat()
        photos = list(draft.photos)[:MAX_PHOTOS]
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO listings (
                    id, author_id, type, category, title, description, lat, lng, occurred_at,
                    status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    listing_id,
                    author_id,
                    draft.type,
                    draft.category,
                    draft.title,
                    draft.description,
                    draft.lat,
                    draft.lng,
                    draft.occurred_at,
                    ListingStatus.ACTIVE,
                    now,
                    now,
                ),
            )
            for url in photos:
                conn.execute(
                    "INSERT INTO photos (id, listing_id, url, created_at) VALUES (?, ?, ?, ?)",
                    (str(uuid.uuid4()), listing_id, url, now),
                )
            for secret in draft.secrets:
                conn.execute(
                    "INSERT INTO secrets (id, listing_id, cipher, created_at) VALUES (?, ?, ?, ?)",
                    (str(uuid.uuid4()), listing_id, json.dumps(secret), now),
                )
            conn.commit()
        LOGGER.info("Published %s listing %s by author_id=%s", draft.type, listing_id, author_id)
        return Listing(
            id=listing_id,
            author_id=author_id,
            type=draft.type,
            category=draft.category,
            title=draft.title,
            description=draft.description,
            lat=draft.lat,
            lng=draft.lng,
            occurred_at=draft.occurred_at,
            status=ListingStatus.ACTIVE,
            created_at=now,
            photos=tuple(photos),
        )

    def get(self, listing_id: str) -> Optional[Listing]:
        if not listing_id:
            return None
        with self._db.connection() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM listings WHERE id = ?", (listing_id,)).fetchone()
            if not row:
                return None
            photos = [
                photo["url"]
                for photo in conn.execute(
                    "SELECT url FROM photos WHERE listing_id = ? ORDER BY created_at ASC, rowid ASC",
                    (listing_id,),
                ).fetchall()
            ]
        return _row_to_listing(row, photos)

    def require(self, listing_id: str) -> Listing:
        listing = self.get(listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        return listing

    def secrets(self, listing_id: str) -> List[StoredSecret]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT id, listing_id, cipher FROM secrets WHERE listing_id = ? ORDER BY created_at ASC, rowid ASC",
                (listing_id,),
            ).fetchall()
        result: List[StoredSecret] = []
        for row in rows:
            try:
                stored = json.loads(row["cipher"] or "{}")
            except ValueError:
                LOGGER.warning("Skipping unreadable secret %s", row["id"])
                continue
            if not isinstance(stored, dict):
                continue
            result.append(
                StoredSecret(
                    id=row["id"],
                    listing_id=row["listing_id"],
                    question=str(stored.get("question") or "").strip(),
                    cipher=dict(stored.get("cipher") or {}),
                )
            )
        return result

    def list_by_author(self, author_id: str, *, limit: int = 10) -> List[Listing]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM listings
                WHERE author_id = ?
                ORDER BY CASE status WHEN ? THEN 0 ELSE 1 END, created_at DESC
                LIMIT ?
                """,
                (author_id, ListingStatus.ACTIVE, limit),
            ).fetchall()
        return [_row_to_listing(row) for row in rows]

    def _owned(self, listing_id: str, author_id: str) -> Listing:
        listing = self.require(listing_id)
        if listing.author_id != author_id:
            raise AuthorizationError(f"User {author_id} does not own listing {listing_id}")
        return listing

    def update_fields(self, listing_id: str, author_id: str, **fields: Any) -> Listing:
        """Applies an author's edit. Only title, description, category, occurred_at, lat and lng are writable."""

        listing = self._owned(listing_id, author_id)
        allowed = ("title", "description", "category", "occurred_at", "lat", "lng")
        updates = {name: value for name, value in fields.items() if name in allowed}
        if not updates:
            return listing
        assignments = ", ".join(f"{name} = ?" for name in updates)
        with self._db.connection() as conn:
            conn.execute(
                f"UPDATE listings SET {assignments}, updated_at = ? WHERE id = ?",
                (*updates.values(), isoformat(), listing_id),
            )
            conn.commit()
        return replace(listing, **updates)

    def toggle_status(self, listing_id: str, author_id: str) -> Listing:
        listing = self._owned(listing_id, author_id)
        status = ListingStatus.CLOSED if listing.status == ListingStatus.ACTIVE else ListingStatus.ACTIVE
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE listings SET status = ?, updated_at = ? WHERE id = ?",
                (status, isoformat(), listing_id),
            )
            conn.commit()
        return replace(listing, status=status)

    def replace_photos(self, listing_id: str, author_id: str, photos: Sequence[str]) -> Listing:
        listing = self._owned(listing_id, author_id)
        kept = list(photos)[:MAX_PHOTOS]
        now = isoformat()
        with self._db.connection() as conn:
            conn.execute("DELETE FROM photos WHERE listing_id = ?", (listing_id,))
            for url in kept:
                conn.execute(
                    "INSERT INTO photos (id, listing_id, url, created_at) VALUES (?, ?, ?, ?)",
                    (str(uuid.uuid4()), listing_id, url, now),
                )
            conn.execute("UPDATE listings SET updated_at = ? WHERE id = ?", (now, listing_id))
            conn.commit()
        return replace(listing, photos=tuple(kept))

    def match_candidates(self, listing: Listing, radius_km: float, *, limit: int = 50) -> List[Listing]:
        """Active listings of the opposite type and same category inside a coarse bounding box."""

        opposite = ListingType.FOUND if listing.type == ListingType.LOST else ListingType.LOST
        params: List[Any] = [opposite, listing.category, ListingStatus.ACTIVE, listing.id]
        box = ""
        if listing.lat is not None and listing.lng is not None:
            delta = radius_km / 111.0
            box = "AND lat BETWEEN ? AND ? AND lng BETWEEN ? AND ?"
            params.extend([listing.lat - delta, listing.lat + delta, listing.lng - delta, listing.lng + delta])
        params.append(limit)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM listings
                WHERE type = ? AND category = ? AND status = ? AND id != ?
                {box}
                ORDER BY created_at DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [_row_to_listing(row) for row in rows]

    def volunteer_candidates(
        self,
        category: str,
        *,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        limit: int = 5,
    ) -> List[Listing]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM listings
                WHERE status = ? AND type = ? AND category = ?
                ORDER BY created_at DESC
                """,
                (ListingStatus.ACTIVE, ListingType.LOST, category),
            ).fetchall()
        listings = [_row_to_listing(row) for row in rows]
        if latitude is None or longitude is None:
            return listings[:limit]
        located: List[Listing] = []
        for listing in listings:
            distance = None
            if listing.lat is not None and listing.lng is not None:
                distance = haversine_km(latitude, longitude, listing.lat, listing.lng)
            located.append(replace(listing, distance_km=distance))
        located.sort(key=lambda item: (item.distance_km is None, item.distance_km or 0.0))
        return located[:limit]

    def find_assignment(self, listing_id: str, volunteer_id: str) -> Optional[Dict[str, Any]]:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, listing_id, volunteer_id, status, created_at
                FROM volunteer_assignments
                WHERE listing_id = ? AND volunteer_id = ? AND status = 'ACTIVE'
                """,
                (listing_id, volunteer_id),
            ).fetchone()
        return dict(row) if row else None

    def create_assignment(self, listing_id: str, volunteer_id: str) -> bool:
        """Returns False when the volunteer is already assigned to the listing."""

        now = isoformat()
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO volunteer_assignments (id, listing_id, volunteer_id, status, created_at, updated_at)
                VALUES (?, ?, ?, 'ACTIVE', ?, ?)
                ON CONFLICT (listing_id, volunteer_id) DO NOTHING
                """,
                (str(uuid.uuid4()), listing_id, volunteer_id, now, now),
            )
            conn.commit()
        return cursor.rowcount > 0
