from unittest.mock import MagicMock

import pytest

from lostfound_bot.errors import TransportError
from lostfound_bot.models import NotificationStatus, NotificationType
from lostfound_bot.services.notifier import Notifier, render


@pytest.fixture
def notifier(services):
    return services.notifier


@pytest.fixture
def user(services):
    return services.users.ensure("max-100")


def test_upsert_with_same_key_keeps_one_row_with_latest_body(notifier, user):
    first = notifier.upsert(user.id, NotificationType.OWNER_WAITING, chat_id="chat-1", body="first")
    second = notifier.upsert(user.id, NotificationType.OWNER_WAITING, chat_id="chat-1", body="second")

    items = notifier.list_for_user(user.id, include_archived=True)
    assert len(items) == 1
    assert first.id == second.id
    assert items[0].body == "second"


def test_upsert_with_other_chat_creates_new_row(notifier, user):
    notifier.upsert(user.id, NotificationType.OWNER_WAITING, chat_id="chat-1", body="one")
    notifier.upsert(user.id, NotificationType.OWNER_WAITING, chat_id="chat-2", body="two")
    notifier.upsert(user.id, NotificationType.OWNER_WAITING, chat_id=None, body="none")

    assert len(notifier.list_for_user(user.id)) == 3


def test_upsert_patch_keeps_untouched_fields(notifier, user):
    notifier.upsert(
        user.id,
        NotificationType.OWNER_REVIEW,
        chat_id="chat-1",
        title="Review",
        body="answers",
        status=NotificationStatus.ACTION,
        payload={"chatId": "chat-1"},
    )

    resolved = notifier.upsert(user.id, NotificationType.OWNER_REVIEW, chat_id="chat-1", status=NotificationStatus.RESOLVED)

    assert resolved.status == NotificationStatus.RESOLVED
    assert resolved.title == "Review"
    assert resolved.body == "answers"
    assert resolved.payload == {"chatId": "chat-1"}


def test_list_orders_by_status_then_recency(notifier, user):
    notifier.create(user.id, NotificationType.LISTING_PUBLISHED, title="read", status=NotificationStatus.READ)
    notifier.create(user.id, NotificationType.LISTING_PUBLISHED, title="old unread")
    notifier.create(user.id, NotificationType.MATCH_FOUND, title="action", status=NotificationStatus.ACTION)
    notifier.create(user.id, NotificationType.LISTING_PUBLISHED, title="resolved", status=NotificationStatus.RESOLVED)
    notifier.create(user.id, NotificationType.LISTING_PUBLISHED, title="new unread")

    titles = [item.title for item in notifier.list_for_user(user.id)]

    assert titles == ["action", "new unread", "old unread", "read", "resolved"]


def test_archived_is_hidden_and_never_resurrected(notifier, user):
    item = notifier.create(user.id, NotificationType.LISTING_PUBLISHED, title="old")
    assert notifier.archive(item.id, user.id)

    assert notifier.list_for_user(user.id) == []
    archived = notifier.list_for_user(user.id, include_archived=True)
    assert notifier.repository.mark_read([item.id]) == 0
    assert notifier.repository.get(item.id).status == NotificationStatus.ARCHIVED
    assert [entry.status for entry in archived] == [NotificationStatus.ARCHIVED]


def test_archive_requires_owner(notifier, user, services):
    other = services.users.ensure("max-200")
    item = notifier.create(user.id, NotificationType.LISTING_PUBLISHED)

    assert not notifier.archive(item.id, other.id)
    assert notifier.repository.get(item.id).status == NotificationStatus.UNREAD


def test_mark_read_touches_only_unread(notifier, user):
    unread = notifier.create(user.id, NotificationType.LISTING_PUBLISHED)
    action = notifier.create(user.id, NotificationType.MATCH_FOUND, status=NotificationStatus.ACTION)

    notifier.mark_read([unread, action])

    assert notifier.repository.get(unread.id).status == NotificationStatus.READ
    assert notifier.repository.get(unread.id).read_at is not None
    assert notifier.repository.get(action.id).status == NotificationStatus.ACTION


def test_push_delivers_by_platform_id(notifier, user, client):
    assert notifier.push(user.id, "hello")

    client.send_message.assert_called_once_with("max-100", "hello", None)


def test_push_swallows_transport_failure(notifier, user, client):
    client.send_message.side_effect = TransportError("down")

    assert notifier.push(user.id, "hello") is False


def test_push_to_unknown_user_is_skipped(notifier, client):
    assert notifier.push("missing", "hello") is False
    client.send_message.assert_not_called()


def test_record_survives_failed_push(notifier, user, client):
    client.send_message.side_effect = TransportError("down")

    notifier.upsert(user.id, NotificationType.OWNER_WAITING, chat_id="chat-1", body="waiting")
    notifier.push(user.id, "waiting")

    assert [item.body for item in notifier.list_for_user(user.id)] == ["waiting"]


def _notification(notifier, user, type, status, **fields):
    return notifier.create(user.id, type, status=status, **fields)


def test_render_owner_review_offers_decision_only_while_actionable(notifier, user):
    action = _notification(
        notifier, user, NotificationType.OWNER_REVIEW, NotificationStatus.ACTION, chat_id="chat-1", title="Review"
    )
    resolved = _notification(
        notifier, user, NotificationType.OWNER_REVIEW, NotificationStatus.RESOLVED, chat_id="chat-2"
    )

    text, buttons = render(action)
    payloads = [button.payload for row in buttons for button in row]

    assert text.startswith("⏳ Review")
    assert payloads == ["owner:review:chat-1|confirm", "owner:review:chat-1|decline"]
    assert render(resolved)[1] is None


def test_render_match_found_links_both_listings(notifier, user):
    item = _notification(
        notifier,
        user,
        NotificationType.MATCH_FOUND,
        NotificationStatus.ACTION,
        listing_id="found-1",
        payload={"originId": "lost-1", "originType": "LOST", "targetId": "found-1"},
    )

    _, buttons = render(item)
    payloads = [button.payload for row in buttons for button in row]

    assert payloads == ["lost:match:found-1|lost-1", "menu:show_listing:found-1"]


def test_render_uses_default_title_and_body(notifier, user):
    item = _notification(notifier, user, NotificationType.CONTACT_AVAILABLE, NotificationStatus.UNREAD, body="Phone")

    text, buttons = render(item)

    assert text == "🆕 Contact available\n\nPhone"
    assert buttons is None


def test_notifier_wraps_repository(services):
    repository = MagicMock()
    notifier = Notifier(repository, services.users, services.client)
    repository.latest_by_key.return_value = None

    notifier.upsert("user-1", NotificationType.OWNER_WAITING, chat_id="chat-1", body="x")

    repository.create.assert_called_once_with("user-1", NotificationType.OWNER_WAITING, chat_id="chat-1", body="x")
