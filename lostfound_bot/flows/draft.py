"""Pure helpers over the listing draft stored in a session payload."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..database import utcnow
from ..errors import ValidationError
from ..models import FlowName, GeoPoint, ListingType, NewListing, PhotoAttachment
from . import catalog

MAX_PHOTOS = 3
MAX_SECRETS = 3
QUESTION_LIMIT = 160
ANSWER_LIMIT = 200
NOTE_LIMIT = 500
TRANSIT_LIMIT = 200

EXACT = "exact"
APPROX = "approx"
TRANSIT = "transit"
LOCATION_MODES = (EXACT, APPROX, TRANSIT)

MODE_LABELS = {EXACT: "Exact point", APPROX: "Approximate area", TRANSIT: "On the way"}

STAGE_TRANSIT = "transit_route"
STAGE_DETAILS = "details"
STAGE_TIME = "time"
STAGE_COMPLETE = "complete"

SECRET_DELIMITERS = ("::", "—", "-", ":", "?")

_TIME_PART = re.compile(r"(\d{1,2})(?::(\d{1,2}))?")
_DATE_INPUT = re.compile(
    r"^(\d{1,2})[./-](\d{1,2})(?:[./-](\d{2,4}))?(?:\s+(\d{1,2})(?::(\d{1,2}))?)?$"
)


def new_payload(flow: str) -> Dict[str, Any]:
    listing_type = ListingType.LOST if flow == FlowName.LOST else ListingType.FOUND
    return {
        "flow": flow,
        "listing": {
            "type": listing_type,
            "category": None,
            "attributes": {},
            "pending_secrets": [],
            "photos": [],
            "location": None,
            "location_original": None,
            "location_mode": None,
            "location_note": None,
            "transit": None,
            "occurred_at": None,
            "secret_questions": [],
            "encrypted_secrets": [],
        },
        "meta": {
            "photo_acknowledged": False,
            "legal_accepted": False,
            "location_stage": None,
            "current_attribute_key": None,
        },
    }


def listing_of(payload: Dict[str, Any]) -> Dict[str, Any]:
    return payload.get("listing") or {}


def meta_of(payload: Dict[str, Any]) -> Dict[str, Any]:
    return payload.get("meta") or {}


def next_unanswered_field(payload: Dict[str, Any]) -> Optional[catalog.AttributeField]:
    """First field of the chosen category without an answer. A skipped field counts as answered."""

    listing = listing_of(payload)
    attributes = listing.get("attributes") or {}
    for item in catalog.fields_for(listing.get("category")):
        if item.key not in attributes:
            return item
    return None


def record_answer(draft: Dict[str, Any], item: catalog.AttributeField, value: Optional[str]) -> None:
    listing = draft.setdefault("listing", {})
    listing.setdefault("attributes", {})[item.key] = value
    if item.secret_hint:
        hints = [hint for hint in listing.get("pending_secrets") or [] if hint.get("key") != item.key]
        if value and len(hints) < MAX_SECRETS:
            hints.append({"key": item.key, "value": value})
        listing["pending_secrets"] = hints
    draft.setdefault("meta", {})["current_attribute_key"] = None


def forget_last_answer(draft: Dict[str, Any]) -> None:
    listing = draft.setdefault("listing", {})
    attributes = listing.setdefault("attributes", {})
    answered = [item.key for item in catalog.fields_for(listing.get("category")) if item.key in attributes]
    if not answered:
        return
    last = answered[-1]
    attributes.pop(last, None)
    listing["pending_secrets"] = [
        hint for hint in listing.get("pending_secrets") or [] if hint.get("key") != last
    ]


def append_photos(draft: Dict[str, Any], attachments: Tuple[PhotoAttachment, ...]) -> Tuple[int, int]:
    """Adds new photos up to the limit, deduplicated by id. Returns (added, skipped)."""

    listing = draft.setdefault("listing", {})
    photos: List[Dict[str, Any]] = listing.setdefault("photos", [])
    known = {photo.get("id") for photo in photos}
    added = skipped = 0
    for attachment in attachments:
        if len(photos) >= MAX_PHOTOS or attachment.id in known:
            skipped += 1
            continue
        photos.append({"id": attachment.id, "url": attachment.url, "token": attachment.token})
        known.add(attachment.id)
        added += 1
    return added, skipped


def photo_reference(photo: Dict[str, Any]) -> Optional[str]:
    if photo.get("url"):
        return photo["url"]
    if photo.get("token"):
        return f"max-photo-token:{photo['token']}"
    return None


def _round_to(value: float, step: float) -> float:
    return round(round(value / step) * step, 6)


def generalize_location(flow: str, point: GeoPoint, mode: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Returns (public, original) coordinates.

    Exact LOST points stay as they are. Everything else is snapped to a grid:
    0.02 for approximate areas, 0.05 for transit, 0.01 for an exact FOUND
    point and 0.005 for a non-exact LOST fallback.
    """

    original = {"latitude": float(point.latitude), "longitude": float(point.longitude)}
    if flow != FlowName.FOUND and mode == EXACT:
        return {**original, "precision": "point"}, original
    if mode == APPROX:
        step, precision = 0.02, "district"
    elif mode == TRANSIT:
        step, precision = 0.05, "transit"
    elif flow == FlowName.LOST:
        step, precision = 0.005, "area"
    else:
        step, precision = 0.01, "area"
    public = {
        "latitude": _round_to(original["latitude"], step),
        "longitude": _round_to(original["longitude"], step),
        "precision": precision,
    }
    return public, original


def _with_time(base: datetime, part: str) -> Optional[datetime]:
    part = part.strip()
    if not part:
        return base
    match = _TIME_PART.match(part)
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    try:
        return base.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    except ValueError:
        return None


def parse_occurred_at(raw: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Understands ``now``, ``today HH:MM``, ``yesterday HH:MM``, ``DD.MM[.YYYY] [HH[:MM]]`` and ISO 8601."""

    text = (raw or "").strip()
    if not text:
        return None
    current = now or utcnow()
    lower = text.lower()
    if lower == "now":
        return current
    if lower.startswith("today"):
        return _with_time(current, lower[len("today"):])
    if lower.startswith("yesterday"):
        return _with_time(current - timedelta(days=1), lower[len("yesterday"):])
    match = _DATE_INPUT.match(text)
    if match:
        day, month = int(match.group(1)), int(match.group(2))
        year = int(match.group(3)) if match.group(3) else current.year
        if year < 100:
            year += 2000
        hours = int(match.group(4)) if match.group(4) else 12
        minutes = int(match.group(5)) if match.group(5) else 0
        try:
            return datetime(year, month, day, hours, minutes, tzinfo=current.tzinfo or timezone.utc)
        except ValueError:
            return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def split_secret_line(line: str) -> Tuple[str, str]:
    for delimiter in SECRET_DELIMITERS:
        index = line.find(delimiter)
        if index > -1:
            return line[:index].strip(), line[index + len(delimiter):].strip()
    return "", line.strip()


def parse_secret_entries(text: str) -> List[Dict[str, str]]:
    """Parses up to three ``question :: answer`` lines; both halves are required."""

    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    if not lines:
        raise ValidationError("Enter at least one question or send /skip.")
    entries: List[Dict[str, str]] = []
    for line in lines[:MAX_SECRETS]:
        question, answer = split_secret_line(line)
        if not question:
            raise ValidationError("Found items need a question. Use the format “Question :: answer”.")
        if not answer:
            raise ValidationError("Add the expected answer after “::” so the owner can be verified.")
        if len(question) > QUESTION_LIMIT:
            raise ValidationError(f"Please shorten the question to {QUESTION_LIMIT} characters.")
        if len(answer) > ANSWER_LIMIT:
            raise ValidationError(f"Please shorten the answer to {ANSWER_LIMIT} characters.")
        entries.append({"question": question, "answer": answer})
    return entries


def attribute_lines(payload: Dict[str, Any]) -> List[str]:
    listing = listing_of(payload)
    attributes = listing.get("attributes") or {}
    lines: List[str] = []
    for item in catalog.fields_for(listing.get("category")):
        if item.key not in attributes:
            continue
        value = attributes[item.key]
        if value is None or not str(value).strip():
            lines.append(f"{item.label}: (skipped)")
        else:
            lines.append(f"{item.label}: {str(value).strip()}")
    return lines


def format_when(value: Optional[str]) -> str:
    if not value:
        return "—"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return "—"
    return parsed.strftime("%d.%m.%Y %H:%M")


def format_coordinates(location: Optional[Dict[str, Any]]) -> str:
    if not location:
        return "—"
    return f"{location['latitude']:.5f}, {location['longitude']:.5f}"


def summary(payload: Dict[str, Any]) -> str:
    listing = listing_of(payload)
    lines = attribute_lines(payload)
    attributes_text = "Details:\n - " + "\n - ".join(lines) if lines else "Details: —"
    return "\n".join(
        [
            f"Category: {catalog.category_title(listing.get('category'))}",
            attributes_text,
            f"Photos: {len(listing.get('photos') or [])}",
            f"Location mode: {MODE_LABELS.get(listing.get('location_mode') or '', '—')}",
            f"Coordinates: {format_coordinates(listing.get('location'))}",
            f"Location note: {listing.get('location_note') or '—'}",
            f"Time: {format_when(listing.get('occurred_at'))}",
            f"Secret questions: {len(listing.get('secret_questions') or [])}",
        ]
    )


def preview(flow: Optional[str], payload: Dict[str, Any]) -> str:
    if flow not in (FlowName.LOST, FlowName.FOUND) or not payload.get("listing"):
        return "The draft is empty. Start over or pick a scenario."
    title = "Draft: I lost something" if flow == FlowName.LOST else "Draft: I found something"
    return f"{title}\n\n{summary(payload)}"


def build_listing(flow: str, payload: Dict[str, Any]) -> NewListing:
    listing = listing_of(payload)
    category = catalog.normalize_category(listing.get("category"))
    if not category or catalog.category(category) is None:
        raise ValidationError("Choose a category before publishing.")
    attributes = listing.get("attributes") or {}
    subject = None
    for item in catalog.fields_for(category):
        value = attributes.get(item.key)
        if value is not None and str(value).strip():
            subject = str(value).strip()
            break
    verb = "Lost" if flow == FlowName.LOST else "Found"
    title = f"{verb}: {subject or catalog.category_title(category)}"

    parts: List[str] = []
    lines = attribute_lines(payload)
    if lines:
        parts.append("Details:")
        parts.extend(f"- {line}" for line in lines)
    if listing.get("transit"):
        parts.append(f"Route: {listing['transit']}")
    if listing.get("location_note"):
        parts.append(f"Location: {listing['location_note']}")
    if flow == FlowName.FOUND:
        parts.append("The exact point is shared with the owner after verification.")

    location = listing.get("location") or {}
    photos = [ref for ref in (photo_reference(photo) for photo in listing.get("photos") or []) if ref]
    return NewListing(
        type=ListingType.LOST if flow == FlowName.LOST else ListingType.FOUND,
        category=category,
        title=title,
        description="\n".join(parts),
        lat=location.get("latitude"),
        lng=location.get("longitude"),
        occurred_at=listing.get("occurred_at"),
        photos=photos[:MAX_PHOTOS],
        secrets=list(listing.get("encrypted_secrets") or [])[:MAX_SECRETS],
    )
