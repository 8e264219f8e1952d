"""Callback payload encoding and the keyboards shared by several flows."""

from __future__ import annotations

from typing import NamedTuple, Optional

from ..models import Button, FlowName, Keyboard


class CallbackAction(NamedTuple):
    flow: str
    action: str
    value: Optional[str]


def payload(flow: str, action: str, value: Optional[str] = None) -> str:
    if value is None or value == "":
        return f"{flow}:{action}"
    return f"{flow}:{action}:{value}"


def parse_payload(raw: Optional[str]) -> Optional[CallbackAction]:
    """Splits ``flow:action[:value]``. The value keeps any further colons."""

    if not raw:
        return None
    parts = str(raw).split(":", 2)
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    value = parts[2] if len(parts) == 3 and parts[2] != "" else None
    return CallbackAction(flow=parts[0], action=parts[1], value=value)


def main_menu(front_origin: Optional[str] = None, donation_url: Optional[str] = None) -> Keyboard:
    rows: Keyboard = [
        [
            Button.callback("🆘 I lost something", payload(FlowName.LOST, "start")),
            Button.callback("📦 I found something", payload(FlowName.FOUND, "start")),
        ],
        [Button.callback("📂 My listings", payload(FlowName.MY, "start"))],
        [Button.callback("🐾 Volunteer", payload(FlowName.VOLUNTEER, "start"))],
        [Button.callback("🔔 Notifications", payload(FlowName.MENU, "notifications"))],
    ]
    if front_origin and front_origin.startswith("https://"):
        rows.append([Button.link("🗺️ Open map", front_origin)])
    if donation_url:
        rows.append([Button.link("❤️ Support shelters", donation_url)])
    return rows


def flow_controls(flow: str) -> Keyboard:
    return [
        [
            Button.callback("⬅️ Back", payload(flow, "back")),
            Button.callback("✖️ Cancel", payload(flow, "cancel")),
        ]
    ]


def owner_review(chat_id: str) -> Keyboard:
    return [
        [
            Button.callback("✅ It is the owner", payload(FlowName.OWNER, "review", f"{chat_id}|confirm")),
            Button.callback("❌ Not the owner", payload(FlowName.OWNER, "review", f"{chat_id}|decline")),
        ]
    ]


def contact_request(chat_id: str) -> Keyboard:
    return [[Button.callback("🤝 Exchange contacts", payload(FlowName.OWNER, "contact_request", chat_id))]]


def share_contact(chat_id: str) -> Keyboard:
    return [
        [Button.callback("📱 Share my contact", payload(FlowName.OWNER, "share_contact", chat_id))],
        [Button.request_contact("Send my number from MAX")],
    ]


def show_listing(listing_id: str, text: str = "👁️ Show listing") -> Keyboard:
    return [[Button.callback(text, payload(FlowName.MENU, "show_listing", listing_id))]]


def match_buttons(flow: str, target_id: str, origin_id: str) -> Keyboard:
    return [
        [Button.callback("✉️ Verify and contact", payload(flow, "match", f"{target_id}|{origin_id}"))],
        [Button.callback("👁️ Show listing", payload(FlowName.MENU, "show_listing", target_id))],
    ]
