"""Data transfer objects for sessions, listings, chats and notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


class FlowName:
    LOST = "lost"
    FOUND = "found"
    OWNER = "owner"
    VOLUNTEER = "volunteer"
    MY = "my"
    MENU = "menu"


class ListingType:
    LOST = "LOST"
    FOUND = "FOUND"

    @staticmethod
    def flow(listing_type: Optional[str]) -> Optional[str]:
        return {"LOST": FlowName.LOST, "FOUND": FlowName.FOUND}.get(listing_type or "")


class ListingStatus:
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class ChatType:
    OWNER_CHECK = "OWNER_CHECK"
    DIALOG = "DIALOG"


class ChatStatus:
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DECLINED = "DECLINED"
    CLOSED = "CLOSED"

    OPEN = (PENDING, ACTIVE)


class ChatRole:
    CLAIMANT = "CLAIMANT"
    HOLDER = "HOLDER"
    OBSERVER = "OBSERVER"


class NotificationStatus:
    UNREAD = "UNREAD"
    ACTION = "ACTION"
    READ = "READ"
    RESOLVED = "RESOLVED"
    ARCHIVED = "ARCHIVED"

    ORDER = (ACTION, UNREAD, READ, RESOLVED, ARCHIVED)


class NotificationType:
    OWNER_WAITING = "OWNER_WAITING"
    OWNER_REVIEW = "OWNER_REVIEW"
    OWNER_APPROVED = "OWNER_APPROVED"
    OWNER_DECLINED = "OWNER_DECLINED"
    CONTACT_SHARE_REQUEST = "CONTACT_SHARE_REQUEST"
    CONTACT_AVAILABLE = "CONTACT_AVAILABLE"
    LISTING_PUBLISHED = "LISTING_PUBLISHED"
    MATCH_FOUND = "MATCH_FOUND"
    VOLUNTEER_ASSIGNED = "VOLUNTEER_ASSIGNED"
    VOLUNTEER_ACTIVE = "VOLUNTEER_ACTIVE"


@dataclass(frozen=True)
class UserContact:
    id: str
    max_id: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class Session:
    user_id: str
    step: str
    flow: Optional[str]
    payload: Dict[str, Any]
    version: int = 0
    updated_at: Optional[str] = None

    @property
    def is_idle(self) -> bool:
        return self.flow is None


@dataclass(frozen=True)
class StoredSecret:
    id: str
    listing_id: str
    question: str
    cipher: Dict[str, Any]


@dataclass(frozen=True)
class Listing:
    id: str
    author_id: str
    type: str
    category: str
    title: str
    description: Optional[str]
    lat: Optional[float]
    lng: Optional[float]
    occurred_at: Optional[str]
    status: str
    created_at: str
    photos: Tuple[str, ...] = ()
    distance_km: Optional[float] = None


@dataclass(frozen=True)
class NewListing:
    """Listing fields assembled from a finished draft, before persistence."""

    type: str
    category: str
    title: str
    description: str
    lat: Optional[float]
    lng: Optional[float]
    occurred_at: Optional[str]
    photos: List[str] = field(default_factory=list)
    secrets: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Chat:
    id: str
    lost_listing_id: Optional[str]
    found_listing_id: Optional[str]
    initiator_id: str
    holder_id: str
    claimant_id: str
    type: str
    status: str
    last_message_at: Optional[str]
    created_at: str


@dataclass(frozen=True)
class ChatMember:
    chat_id: str
    user_id: str
    role: str
    max_id: Optional[str] = None


@dataclass(frozen=True)
class ChatMessage:
    id: str
    chat_id: str
    sender_id: str
    body: str
    meta: Dict[str, Any]
    created_at: str


@dataclass(frozen=True)
class Notification:
    id: str
    user_id: str
    chat_id: Optional[str]
    listing_id: Optional[str]
    type: str
    title: Optional[str]
    body: Optional[str]
    payload: Dict[str, Any]
    status: str
    created_at: str
    updated_at: str
    read_at: Optional[str] = None


@dataclass(frozen=True)
class MatchCandidate:
    id: str
    title: str
    score: int


@dataclass(frozen=True)
class Button:
    text: str
    payload: Optional[str] = None
    url: Optional[str] = None
    kind: str = "callback"

    @classmethod
    def callback(cls, text: str, payload: str) -> "Button":
        return cls(text=text, payload=payload)

    @classmethod
    def link(cls, text: str, url: str) -> "Button":
        return cls(text=text, url=url, kind="link")

    @classmethod
    def request_contact(cls, text: str) -> "Button":
        return cls(text=text, kind="request_contact")


Keyboard = List[List[Button]]


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class PhotoAttachment:
    id: str
    url: Optional[str] = None
    token: Optional[str] = None


@dataclass(frozen=True)
class InboundEvent:
    """A normalised platform update: a message, a button press or a bot start."""

    kind: str
    max_user_id: str
    text: str = ""
    photos: Tuple[PhotoAttachment, ...] = ()
    location: Optional[GeoPoint] = None
    contact_phone: Optional[str] = None
    callback_id: Optional[str] = None
    callback_payload: Optional[str] = None

    MESSAGE = "message"
    CALLBACK = "callback"
    STARTED = "started"

    @property
    def command(self) -> str:
        return self.text.strip().lower()
