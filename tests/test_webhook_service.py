from unittest.mock import MagicMock

import pytest

from lostfound_bot.models import GeoPoint, InboundEvent, PhotoAttachment
from lostfound_bot.services.flow_runtime import FlowRuntime
from lostfound_bot.services.webhook_service import WebhookService


@pytest.fixture
def runtime():
    return MagicMock(spec=FlowRuntime)


@pytest.fixture
def service(runtime):
    return WebhookService(runtime)


def _message(attachments=None, text="hello", user_id=42):
    return {
        "update_type": "message_created",
        "message": {
            "sender": {"user_id": user_id},
            "body": {"text": text, "attachments": attachments or []},
        },
    }


def test_plain_text_message(service):
    event = service.parse_update(_message())

    assert event == InboundEvent(kind=InboundEvent.MESSAGE, max_user_id="42", text="hello")


def test_attachments_are_normalised(service):
    event = service.parse_update(
        _message(
            [
                {"type": "image", "payload": {"photo_id": 7, "url": "https://cdn.test/7.jpg", "token": "t7"}},
                {"type": "image", "payload": {"token": "t8"}},
                {"type": "image", "payload": {}},
                {"type": "location", "latitude": 55.75, "longitude": 37.61},
                "garbage",
            ],
            text="",
        )
    )

    assert event.photos == (
        PhotoAttachment(id="7", url="https://cdn.test/7.jpg", token="t7"),
        PhotoAttachment(id="t8", url=None, token="t8"),
    )
    assert event.location == GeoPoint(latitude=55.75, longitude=37.61)


def test_location_inside_payload(service):
    event = service.parse_update(_message([{"type": "location", "payload": {"latitude": "55.1", "longitude": "37.2"}}]))

    assert event.location == GeoPoint(latitude=55.1, longitude=37.2)


def test_malformed_location_is_ignored(service):
    event = service.parse_update(_message([{"type": "location", "payload": {"latitude": "north"}}]))

    assert event.location is None


@pytest.mark.parametrize(
    "payload, phone",
    [
        ({"tel": "+79001112233"}, "+79001112233"),
        ({"vcf_info": "BEGIN:VCARD\nFN:Bob\nTEL;TYPE=cell:+7 900 111-22-33\nEND:VCARD"}, "+7 900 111-22-33"),
        ({"vcf_info": "BEGIN:VCARD\nEND:VCARD"}, None),
    ],
)
def test_contact_phone(service, payload, phone):
    event = service.parse_update(_message([{"type": "contact", "payload": payload}], text=""))

    assert event.contact_phone == phone


def test_callback(service):
    event = service.parse_update(
        {
            "update_type": "message_callback",
            "callback": {"callback_id": "cb-1", "payload": "lost:start", "user": {"user_id": 5}},
        }
    )

    assert event.kind == InboundEvent.CALLBACK
    assert (event.max_user_id, event.callback_id, event.callback_payload) == ("5", "cb-1", "lost:start")


def test_bot_started(service):
    event = service.parse_update({"update_type": "bot_started", "user": {"user_id": 9}})

    assert event == InboundEvent(kind=InboundEvent.STARTED, max_user_id="9")


@pytest.mark.parametrize(
    "update",
    [
        {"update_type": "message_edited"},
        {"update_type": "message_created", "message": {"body": {"text": "hi"}}},
        {"update_type": "message_callback", "callback": {"payload": "x"}},
        {"update_type": "bot_started"},
        {},
    ],
)
def test_unusable_updates_are_skipped(service, update):
    assert service.parse_update(update) is None


def test_process_webhook_dispatches_each_update(service, runtime):
    handled = service.process_webhook(
        {
            "updates": [
                _message(user_id=1),
                {"update_type": "message_removed"},
                {"update_type": "bot_started", "user": {"user_id": 2}},
            ]
        }
    )

    assert handled == 2
    assert [call.args[0].max_user_id for call in runtime.handle.call_args_list] == ["1", "2"]


def test_process_webhook_accepts_single_update(service, runtime):
    assert service.process_webhook(_message(user_id=3)) == 1
    runtime.handle.assert_called_once()
