import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

import pytest

from lostfound_bot.database import isoformat, utcnow
from lostfound_bot.errors import StaleSessionError, TransportError
from lostfound_bot.flows.registry import build_registry
from lostfound_bot.models import (
    GeoPoint,
    InboundEvent,
    ListingStatus,
    ListingType,
    NotificationStatus,
    NotificationType,
    PhotoAttachment,
)
from lostfound_bot.services.flow_runtime import DENIED, GENERIC_ERROR, RETRY_ERROR, UNAVAILABLE, FlowRuntime
from lostfound_bot.services.listing_publisher import ListingPublisher
from lostfound_bot.services.owner_verification import OwnerVerification

from conftest import callback_payloads, replies

POINT = GeoPoint(latitude=55.7512, longitude=37.6184)

LOST_WALK = (
    ("press", "lost:start", {}),
    ("press", "lost:category:wear", {}),
    ("send", "backpack", {}),
    ("send", "/skip", {}),
    ("send", "red", {}),
    ("send", "/skip", {}),
    ("send", "/skip", {}),
    ("press", "lost:location_mode:exact", {}),
    ("send", "", {"location": POINT}),
    ("send", "today 14:30", {}),
)


def _session(services, ctx):
    return services.sessions.get(ctx.user_id)


def _walk_lost(send, press, services, upto=len(LOST_WALK)):
    """Feeds the first ``upto`` events of the backpack wizard; returns (contexts, persisted steps)."""

    contexts, steps = [], []
    for kind, value, fields in LOST_WALK[:upto]:
        ctx = press("alice", value) if kind == "press" else send("alice", value, **fields)
        contexts.append(ctx)
        steps.append(_session(services, ctx).step)
    return contexts, steps


def test_lost_flow_persists_steps_in_declared_order(send, press, services, runtime):
    _, steps = _walk_lost(send, press, services)

    visited = []
    for step in steps:
        if not visited or visited[-1] != step:
            visited.append(step)

    assert visited == runtime.registry.get("lost").order
    assert "lost_secrets" not in visited


def test_skipped_optional_field_is_stored_as_none_and_not_asked_again(send, press, services):
    contexts, _ = _walk_lost(send, press, services)

    payload = _session(services, contexts[-1]).payload
    assert payload["listing"]["attributes"] == {
        "item_type": "backpack",
        "brand": None,
        "color": "red",
        "features": None,
    }
    asked = replies(contexts[3]) + replies(contexts[4]) + replies(contexts[5])
    assert asked.count("If there is a brand or make") == 0


def test_lost_publish_clears_session_and_announces(send, press, services):
    _walk_lost(send, press, services)

    ctx = press("alice", "lost:confirm:publish")

    assert services.sessions.get(ctx.user_id) is None
    listing = services.listings.list_by_author(ctx.user_id)[0]
    assert listing.title == "Lost: backpack"
    assert listing.type == ListingType.LOST
    assert (listing.lat, listing.lng) == (POINT.latitude, POINT.longitude)
    assert listing.occurred_at.endswith("+00:00")
    assert ctx.notices == ["Published"]
    text = replies(ctx)
    assert "✅ Listing published: Lost: backpack" in text
    assert "No matching listings yet" in text
    published = services.notifier.list_for_user(ctx.user_id)
    assert [item.type for item in published] == [NotificationType.LISTING_PUBLISHED]


def test_publish_suggests_matching_found_listing(send, press, services, make_listing):
    bob = services.users.ensure("bob")
    found = make_listing(bob.id, ListingType.FOUND, "Found: red backpack")
    _walk_lost(send, press, services)

    ctx = press("alice", "lost:confirm:publish")

    lost = services.listings.list_by_author(ctx.user_id)[0]
    assert f"lost:match:{found.id}|{lost.id}" in callback_payloads(ctx)
    assert "🔎 Possible match: Found: red backpack" in replies(ctx)
    match = [item for item in services.notifier.list_for_user(ctx.user_id) if item.type == NotificationType.MATCH_FOUND]
    assert len(match) == 1
    assert match[0].status == NotificationStatus.ACTION
    assert match[0].payload["targetId"] == found.id


def test_required_field_cannot_be_skipped(send, press, services):
    press("alice", "lost:start")
    press("alice", "lost:category:wear")

    ctx = send("alice", "/skip")

    assert "“Item” is required" in replies(ctx)
    session = _session(services, ctx)
    assert session.step == "lost_attributes"
    assert session.payload["listing"]["attributes"] == {}


def test_unknown_category_reprompts(send, press, services):
    press("alice", "lost:start")

    ctx = send("alice", "spaceship")

    assert replies(ctx) == "Choose a category with the buttons below."
    assert _session(services, ctx).step == "lost_category"


def test_category_can_be_typed(send, press, services):
    press("alice", "lost:start")

    ctx = send("alice", "Keys")

    assert _session(services, ctx).payload["listing"]["category"] == "keys"


def test_back_from_photo_reasks_last_attribute(send, press, services):
    _, steps = _walk_lost(send, press, services, upto=6)
    assert steps[-1] == "lost_photo"
    send("alice", "/back")

    ctx = send("alice", "with a bear keychain")

    session = _session(services, ctx)
    assert session.step == "lost_photo"
    assert session.payload["listing"]["attributes"]["features"] == "with a bear keychain"


def test_back_on_first_step(press):
    press("alice", "lost:start")

    ctx = press("alice", "lost:back")

    assert ctx.notices == ["You are already at the first step"]


def test_cancel_clears_session(send, press, services):
    press("alice", "lost:start")

    ctx = send("alice", "/cancel")

    assert services.sessions.get(ctx.user_id) is None
    assert "Cancelled. What would you like to do?" in replies(ctx)


def test_preview_shows_draft_without_moving(send, press, services):
    press("alice", "lost:start")
    press("alice", "lost:category:wear")

    ctx = send("alice", "/preview")

    assert replies(ctx).startswith("Draft: I lost something")
    assert "Category: Clothing and accessories" in replies(ctx)
    assert _session(services, ctx).step == "lost_attributes"


def test_photo_limit_moves_to_location(send, press, services):
    press("alice", "lost:start")
    press("alice", "lost:category:keys")
    send("alice", "flat")
    send("alice", "/skip")
    send("alice", "/skip")

    photos = tuple(PhotoAttachment(id=f"p{index}", url=f"https://cdn.test/{index}.jpg") for index in range(4))
    ctx = send("alice", "", photos=photos)

    session = _session(services, ctx)
    assert session.step == "lost_location"
    assert len(session.payload["listing"]["photos"]) == 3


def test_next_without_photo_is_rejected(send, press, services):
    press("alice", "lost:start")
    press("alice", "lost:category:keys")
    send("alice", "flat")
    send("alice", "/skip")
    send("alice", "/skip")

    ctx = send("alice", "/next")

    assert "Attach at least one photo" in replies(ctx)
    assert _session(services, ctx).step == "lost_photo"


def test_unparseable_time_is_rejected(send, press, services):
    contexts, _ = _walk_lost(send, press, services, upto=len(LOST_WALK) - 1)
    version = _session(services, contexts[-1]).version

    ctx = send("alice", "some day")

    assert "I could not read the time" in replies(ctx)
    assert _session(services, ctx).version == version


def test_confirm_edit_goes_back_to_attributes_and_skips_location(send, press, services):
    _walk_lost(send, press, services)

    press("alice", "lost:confirm:edit")
    send("alice", "suitcase")
    send("alice", "/skip")
    send("alice", "black")
    ctx = send("alice", "/skip")
    assert _session(services, ctx).step == "lost_photo"
    ctx = send("alice", "/skip")

    session = _session(services, ctx)
    assert session.step == "lost_confirm"
    assert session.payload["listing"]["attributes"]["item_type"] == "suitcase"
    assert session.payload["listing"]["location"]["precision"] == "point"


def _found_until_secrets(send, press):
    press("bob", "found:start")
    hints = press("bob", "found:category:electronics")
    send("bob", "iPhone 13")
    send("bob", "black")
    send("bob", "/skip")
    send("bob", "IMEI ends with 4821")
    return hints


def test_found_flow_with_acknowledgements_and_encrypted_secrets(send, press, services, vault, database):
    hints = _found_until_secrets(send, press)
    assert "Do not reveal the full serial number" in replies(hints)
    assert "report the find to the police" in replies(hints)

    blocked = send("bob", "", photos=(PhotoAttachment(id="p1", url="https://cdn.test/p1.jpg"),))
    assert "confirm the safety note" in replies(blocked)
    press("bob", "found:photo_ack")
    send("bob", "", photos=(PhotoAttachment(id="p1", url="https://cdn.test/p1.jpg"),))
    send("bob", "/next")
    legal = press("bob", "found:location_mode:approx")
    assert "report the find to the police or the local administration" in replies(legal)
    send("bob", "", location=POINT)
    secrets_prompt = send("bob", "/skip")
    assert "- IMEI ends with 4821" in replies(secrets_prompt)
    send("bob", "Sticker colour :: blue\nLast IMEI digits :: 4821")

    early = press("bob", "found:confirm:publish")
    assert early.notices == ["Please confirm the rules first."]
    press("bob", "found:confirm:legal_ack")
    ctx = press("bob", "found:confirm:publish")

    listing = services.listings.get(services.listings.list_by_author(ctx.user_id)[0].id)
    assert listing.title == "Found: iPhone 13"
    assert (listing.lat, listing.lng) == (pytest.approx(55.76), pytest.approx(37.62))
    assert listing.photos == ("https://cdn.test/p1.jpg",)
    secrets = services.listings.secrets(listing.id)
    assert [secret.question for secret in secrets] == ["Sticker colour", "Last IMEI digits"]
    assert [vault.decrypt(secret.cipher) for secret in secrets] == ["blue", "4821"]
    with database.connection() as conn:
        stored = [row["cipher"] for row in conn.execute("SELECT cipher FROM secrets")]
    assert len(stored) == 2
    assert all("blue" not in value for value in stored)


def test_found_secrets_require_answers(send, press, services):
    _found_until_secrets(send, press)
    press("bob", "found:photo_ack")
    send("bob", "/skip")
    press("bob", "found:location_mode:transit")
    send("bob", "Bus 15 towards the centre")
    send("bob", "/skip")
    send("bob", "/skip")

    ctx = send("bob", "Sticker colour ::")

    assert "Add the expected answer" in replies(ctx)
    assert _session(services, ctx).step == "found_secrets"


def test_button_from_another_flow_is_rejected(press):
    press("alice", "lost:start")

    ctx = press("alice", "found:category:wear")

    assert ctx.notices == ["This button belongs to another scenario"]


def test_expired_button_shows_menu(press):
    ctx = press("alice", "lost:category:wear")

    assert ctx.notices == ["This button has expired"]
    assert "Choose what you would like to do:" in replies(ctx)


def test_owner_flow_cannot_be_started_directly(press):
    ctx = press("alice", "owner:start")

    assert ctx.notices == [UNAVAILABLE]


def test_unknown_text_in_idle_shows_menu(send):
    ctx = send("alice", "hello there")

    assert replies(ctx) == "I did not understand that. Choose one of the options:"


def test_text_intent_starts_flow(send, services):
    ctx = send("alice", "I found")

    assert _session(services, ctx).step == "found_category"


def test_unexpected_failure_keeps_previous_state(send, press, services):
    press("alice", "lost:start")
    before = press("alice", "lost:category:wear")
    version = _session(services, before).version

    with patch("lostfound_bot.flows.draft.record_answer", side_effect=RuntimeError("boom")):
        ctx = send("alice", "backpack")

    assert replies(ctx) == GENERIC_ERROR
    assert _session(services, ctx).version == version


def test_stale_session_is_discarded_with_retry_message(send, press, services):
    press("alice", "lost:start")
    ctx = press("alice", "lost:category:wear")
    stale = _session(services, ctx)
    services.sessions.put(ctx.user_id, step=stale.step, flow=stale.flow, payload=stale.payload)

    with patch.object(services.sessions, "load", return_value=stale):
        retry = send("alice", "backpack")

    assert replies(retry) == RETRY_ERROR
    assert _session(services, retry).payload["listing"]["attributes"] == {}


def test_repeated_publish_from_stale_read_creates_one_listing(send, press, services):
    _walk_lost(send, press, services)
    user = services.users.ensure("alice")
    snapshot = services.sessions.load(user.id)
    press("alice", "lost:confirm:publish")

    with patch.object(services.sessions, "load", return_value=snapshot):
        again = press("alice", "lost:confirm:publish")

    assert again.notices == [RETRY_ERROR]
    assert len(services.listings.list_by_author(user.id)) == 1
    published = [
        item for item in services.notifier.list_for_user(user.id) if item.type == NotificationType.LISTING_PUBLISHED
    ]
    assert len(published) == 1


class _FailingStateWrites:
    """Connection wrapper whose writes to ``states`` fail like a locked database."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql, *args):
        if sql.lstrip().startswith(("UPDATE states", "INSERT INTO states")):
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


def test_store_failure_mid_transition_asks_to_retry(send, press, services, database):
    _walk_lost(send, press, services, upto=3)
    user = services.users.ensure("alice")
    before = services.sessions.get(user.id)
    real_connection = database.connection

    @contextmanager
    def failing_connection():
        with real_connection() as conn:
            yield _FailingStateWrites(conn)

    with patch.object(database, "connection", failing_connection):
        ctx = send("alice", "/skip")

    assert RETRY_ERROR in replies(ctx)
    after = services.sessions.get(user.id)
    assert (after.version, after.step, after.payload) == (before.version, before.step, before.payload)


def test_category_hint_is_dropped_when_the_save_is_stale(press, services):
    press("bob", "found:start")
    user = services.users.ensure("bob")

    with patch.object(services.sessions, "save", side_effect=StaleSessionError(user.id, 1)):
        ctx = press("bob", "found:category:electronics")

    assert replies(ctx) == RETRY_ERROR
    assert services.sessions.get(user.id).step == "found_category"


def test_transport_failure_does_not_break_transition(send, press, services, client):
    press("alice", "lost:start")
    client.send_message.side_effect = TransportError("down")
    ctx = press("alice", "lost:category:wear")

    assert _session(services, ctx).step == "lost_attributes"
    assert ctx.sent


def test_unknown_stored_step_is_dropped(send, services):
    user = services.users.ensure("alice")
    services.sessions.put(user.id, step="lost_nowhere", flow="lost", payload={})

    ctx = send("alice", "hello")

    assert services.sessions.get(user.id) is None
    assert "I did not understand that" in replies(ctx)


@pytest.fixture
def ttl_runtime(services):
    timed = replace(services, settings=replace(services.settings, session_ttl_minutes=30))
    verification = OwnerVerification(timed)
    return FlowRuntime(timed, build_registry(verification, ListingPublisher(timed)), verification)


def _age_session(database, user_id, minutes):
    with database.connection() as conn:
        conn.execute(
            "UPDATE states SET updated_at = ? WHERE user_id = ?",
            (isoformat(utcnow() - timedelta(minutes=minutes)), user_id),
        )
        conn.commit()


def test_expired_session_is_dropped_on_next_event(ttl_runtime, services, database):
    user = services.users.ensure("alice")
    services.sessions.put(user.id, step="lost_category", flow="lost", payload={"flow": "lost"})
    _age_session(database, user.id, 120)

    ctx = ttl_runtime.handle(InboundEvent(kind=InboundEvent.MESSAGE, max_user_id="alice", text="hello"))

    assert services.sessions.get(user.id) is None
    assert "Your previous draft expired" in replies(ctx)
    assert "I did not understand that" in replies(ctx)


def test_fresh_session_survives_ttl(ttl_runtime, services, database):
    user = services.users.ensure("alice")
    services.sessions.put(user.id, step="lost_category", flow="lost", payload={"flow": "lost"})
    _age_session(database, user.id, 5)

    ttl_runtime.handle(InboundEvent(kind=InboundEvent.MESSAGE, max_user_id="alice", text="wear"))

    assert services.sessions.get(user.id).step == "lost_attributes"


def test_notifications_view_marks_unread_as_read(send, services):
    user = services.users.ensure("alice")
    unread = services.notifier.create(user.id, NotificationType.LISTING_PUBLISHED, listing_id="l-1", title="Published")
    action = services.notifier.create(
        user.id, NotificationType.OWNER_REVIEW, chat_id="c-1", title="Review", status=NotificationStatus.ACTION
    )

    ctx = send("alice", "notifications")

    assert [text.splitlines()[0] for text, _ in ctx.sent] == ["⏳ Review", "🆕 Published"]
    assert "owner:review:c-1|confirm" in callback_payloads(ctx)
    repository = services.notifier.repository
    assert repository.get(unread.id).status == "READ"
    assert repository.get(action.id).status == NotificationStatus.ACTION


def test_show_listing_access_rules(press, services, make_listing):
    alice = services.users.ensure("alice")
    bag = make_listing(alice.id, ListingType.LOST, "Lost: black bag")
    cat = make_listing(alice.id, ListingType.LOST, "Lost: ginger cat", category="pet")

    own = press("alice", f"menu:show_listing:{bag.id}")
    hidden = press("carol", f"menu:show_listing:{bag.id}")
    public = press("carol", f"menu:show_listing:{cat.id}")
    services.notifier.create(services.users.ensure("carol").id, NotificationType.MATCH_FOUND, listing_id=bag.id)
    referenced = press("carol", f"menu:show_listing:{bag.id}")

    assert replies(own).startswith("Lost: black bag")
    assert hidden.notices == [UNAVAILABLE]
    assert replies(public).startswith("Lost: ginger cat")
    assert replies(referenced).startswith("Lost: black bag")


def test_match_from_found_side_only_records_hint(press, services, make_listing):
    alice = services.users.ensure("alice")
    bob = services.users.ensure("bob")
    lost = make_listing(alice.id, ListingType.LOST, "Lost: red backpack")
    found = make_listing(bob.id, ListingType.FOUND, "Found: red backpack")

    ctx = press("bob", f"found:match:{lost.id}|{found.id}")

    assert "The owner has to start the ownership check" in replies(ctx)
    assert services.chats.find_closed_owner_check(lost.id, found.id) is None
    assert services.sessions.get(bob.id) is None


def test_match_on_foreign_origin_is_denied(press, services, make_listing):
    alice = services.users.ensure("alice")
    bob = services.users.ensure("bob")
    lost = make_listing(alice.id, ListingType.LOST, "Lost: red backpack")
    found = make_listing(bob.id, ListingType.FOUND, "Found: red backpack")

    ctx = press("carol", f"lost:match:{found.id}|{lost.id}")

    assert ctx.notices == [DENIED]


def test_match_on_closed_target_is_unavailable(press, services, make_listing):
    alice = services.users.ensure("alice")
    bob = services.users.ensure("bob")
    lost = make_listing(alice.id, ListingType.LOST, "Lost: red backpack")
    found = make_listing(bob.id, ListingType.FOUND, "Found: red backpack")
    services.listings.toggle_status(found.id, bob.id)
    assert services.listings.get(found.id).status == ListingStatus.CLOSED

    ctx = press("alice", f"lost:match:{found.id}|{lost.id}")

    assert ctx.notices == [UNAVAILABLE]


def test_bot_started_greets_with_menu(runtime):
    ctx = runtime.handle(InboundEvent(kind=InboundEvent.STARTED, max_user_id="alice"))

    assert ctx.sent[0][0].startswith("👋 Hi!")
    assert "lost:start" in callback_payloads(ctx)
    assert any(button.url == "https://map.test" for row in ctx.sent[1][1] for button in row)
