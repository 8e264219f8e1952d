"""Notification fan-out: durable records plus best-effort push delivery."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..errors import TransportError
from ..models import Keyboard, ListingType, Notification, NotificationStatus, NotificationType
from ..repositories.notification_repository import NotificationRepository
from ..repositories.user_repository import UserRepository
from . import keyboards
from .max_client import MaxClient

LOGGER = logging.getLogger(__name__)

STATUS_ICONS = {
    NotificationStatus.ACTION: "⏳",
    NotificationStatus.UNREAD: "🆕",
    NotificationStatus.READ: "📭",
    NotificationStatus.RESOLVED: "✅",
    NotificationStatus.ARCHIVED: "🗄️",
}

DEFAULT_TITLES = {
    NotificationType.OWNER_WAITING: "Waiting for the finder's decision",
    NotificationType.OWNER_REVIEW: "Owner check needs your review",
    NotificationType.OWNER_APPROVED: "The finder confirmed you",
    NotificationType.OWNER_DECLINED: "The finder declined the request",
    NotificationType.CONTACT_SHARE_REQUEST: "Exchange contacts",
    NotificationType.CONTACT_AVAILABLE: "Contact available",
    NotificationType.LISTING_PUBLISHED: "Listing published",
    NotificationType.MATCH_FOUND: "Possible match found",
    NotificationType.VOLUNTEER_ASSIGNED: "A volunteer joined the search",
    NotificationType.VOLUNTEER_ACTIVE: "You are helping with a search",
}


class Notifier:
    """Writes notification records and pushes messages through the transport.

    The record is written first and is the source of truth; a failed push is
    logged and dropped, since users can always poll their notification list.
    """

    def __init__(
        self,
        repository: NotificationRepository,
        users: UserRepository,
        client: MaxClient,
    ) -> None:
        self._repository = repository
        self._users = users
        self._client = client

    @property
    def repository(self) -> NotificationRepository:
        return self._repository

    def create(self, user_id: str, type: str, **fields: Any) -> Notification:
        return self._repository.create(user_id, type, **fields)

    def upsert(self, user_id: str, type: str, chat_id: Optional[str] = None, **fields: Any) -> Notification:
        """Inserts or patches the latest record keyed by ``(user_id, type, chat_id)``."""

        existing = self._repository.latest_by_key(user_id, type, chat_id)
        if existing is None:
            return self._repository.create(user_id, type, chat_id=chat_id, **fields)
        patched = self._repository.patch(existing.id, fields)
        return patched or existing

    def mark_read(self, notifications: List[Notification]) -> int:
        return self._repository.mark_read([item.id for item in notifications if item.status == NotificationStatus.UNREAD])

    def archive(self, notification_id: str, user_id: str) -> bool:
        return self._repository.archive(notification_id, user_id)

    def list_for_user(self, user_id: str, *, limit: int = 10, include_archived: bool = False) -> List[Notification]:
        return self._repository.list_for_user(user_id, limit=limit, include_archived=include_archived)

    def push(self, user_id: str, text: str, buttons: Optional[Keyboard] = None) -> bool:
        """Sends a message to a user by internal id. Returns False when it was not delivered."""

        user = self._users.get(user_id)
        if user is None:
            LOGGER.warning("Cannot push to unknown user_id=%s", user_id)
            return False
        return self.push_to_max(user.max_id, text, buttons)

    def push_to_max(self, max_id: str, text: str, buttons: Optional[Keyboard] = None) -> bool:
        try:
            self._client.send_message(max_id, text, buttons)
        except TransportError:
            LOGGER.error("Push to max_id=%s was not delivered", max_id)
            return False
        return True


def render(notification: Notification) -> Tuple[str, Optional[Keyboard]]:
    icon = STATUS_ICONS.get(notification.status, "•")
    title = notification.title or DEFAULT_TITLES.get(notification.type, "Notification")
    lines = [f"{icon} {title}"]
    body = (notification.body or "").strip()
    if body:
        lines.extend(["", body])
    return "\n".join(lines), _buttons(notification)


def _buttons(notification: Notification) -> Optional[Keyboard]:
    payload: Dict[str, Any] = notification.payload or {}
    is_action = notification.status == NotificationStatus.ACTION
    chat_id = payload.get("chatId") or notification.chat_id
    if notification.type == NotificationType.OWNER_REVIEW:
        return keyboards.owner_review(chat_id) if is_action and chat_id else None
    if notification.type == NotificationType.CONTACT_SHARE_REQUEST:
        return keyboards.contact_request(chat_id) if is_action and chat_id else None
    if notification.type == NotificationType.OWNER_APPROVED:
        return keyboards.share_contact(chat_id) if is_action and chat_id else None
    if notification.type in (NotificationType.LISTING_PUBLISHED, NotificationType.VOLUNTEER_ASSIGNED):
        listing_id = payload.get("listingId") or notification.listing_id
        return keyboards.show_listing(listing_id) if listing_id else None
    if notification.type == NotificationType.MATCH_FOUND:
        target_id = payload.get("targetId") or notification.listing_id
        origin_id = payload.get("originId")
        flow = ListingType.flow(payload.get("originType"))
        if not (flow and target_id and origin_id):
            return None
        return keyboards.match_buttons(flow, target_id, origin_id)
    return None
