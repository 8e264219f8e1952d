"""Static catalogue: categories, their attribute fields and command keywords."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..models import Button, FlowName, Keyboard
from ..services import keyboards


@dataclass(frozen=True)
class Category:
    id: str
    title: str
    emoji: str


@dataclass(frozen=True)
class AttributeField:
    key: str
    label: str
    question: str
    required: bool = False
    hint: Optional[str] = None
    found_question: Optional[str] = None
    secret_hint: bool = False

    def question_for(self, flow: str) -> str:
        if flow == FlowName.FOUND and self.found_question:
            return self.found_question
        return self.question


CATEGORIES: Tuple[Category, ...] = (
    Category("pet", "Pets", "🐾"),
    Category("electronics", "Electronics", "📱"),
    Category("wear", "Clothing and accessories", "👜"),
    Category("document", "Documents", "📄"),
    Category("valuable", "Valuables", "💍"),
    Category("keys", "Keys", "🔑"),
    Category("other", "Other", "❓"),
)

CATEGORY_ALIASES: Dict[str, str] = {
    "phone": "electronics",
    "gadget": "electronics",
    "bag": "wear",
    "clothes": "wear",
    "clothing": "wear",
    "wallet": "valuable",
    "valuables": "valuable",
    "jewelry": "valuable",
    "misc": "other",
    "unknown": "other",
}

CATEGORY_FIELDS: Dict[str, Tuple[AttributeField, ...]] = {
    "pet": (
        AttributeField(
            "species",
            "Species",
            "What kind of animal went missing?",
            required=True,
            hint="For example: cat, dog, ferret.",
            found_question="What kind of animal did you find?",
        ),
        AttributeField("breed", "Breed", "What breed is it? If you are not sure, send /skip."),
        AttributeField("color", "Colour / markings", "Describe the colour or any distinctive markings.", required=True),
        AttributeField("size", "Size", "How big is the animal (large, medium, small)?"),
        AttributeField(
            "nickname",
            "Name / tags",
            "What is the pet's name, if it has one?",
            found_question="Is there a collar, tag or other identifying mark?",
        ),
    ),
    "electronics": (
        AttributeField(
            "device",
            "Device",
            "What device went missing (type, model)?",
            required=True,
            hint="For example: iPhone 13 smartphone, Samsung Tab S7 tablet.",
            found_question="What device did you find (type, model)?",
        ),
        AttributeField("color", "Colour", "What colour is the body or case?", required=True),
        AttributeField("condition", "Details", "Any distinctive details: cracks, stickers, a case?"),
        AttributeField(
            "serial_hint",
            "Unique mark",
            "Give a unique mark (last IMEI or serial digits, a sticker). It is kept as a secret.",
            hint="For example: IMEI ends with 4821, sticker on the back.",
            found_question="Describe unique marks without revealing them fully, e.g. a sticker or part of the serial.",
            secret_hint=True,
        ),
    ),
    "wear": (
        AttributeField("item_type", "Item", "What exactly is it (jacket, scarf, backpack, briefcase)?", required=True),
        AttributeField("brand", "Brand", "If there is a brand or make, name it."),
        AttributeField("color", "Colour / material", "Colour and material (e.g. black leather, blue fabric)?", required=True),
        AttributeField("features", "Distinctive features", "Any patches, key rings or contents that stand out?"),
    ),
    "document": (
        AttributeField("doc_type", "Document type", "Which document is it (passport, driving licence, student ID)?", required=True),
        AttributeField(
            "name_hint",
            "Surname / initials",
            "Give the initials or surname (no full numbers).",
            required=True,
            found_question="Whose name is on the document, if it is visible?",
        ),
        AttributeField(
            "extra",
            "Additional details",
            "Anything characteristic (series starts with 45, issuing office)?",
            hint="Do not write full series or numbers; keep them for the secret questions.",
            found_question="Anything characteristic (stamps, marks, part of the number)?",
            secret_hint=True,
        ),
    ),
    "valuable": (
        AttributeField("item", "Item", "What valuable is it (wallet, jewellery, gadget)?", required=True),
        AttributeField("looks", "Appearance", "What does it look like? Colour, material, shape.", required=True),
        AttributeField(
            "value_hint",
            "Unique details",
            "Which unique details does it have (a note inside, an engraving)? You can mention them partially.",
            found_question="Describe without full disclosure: engraving, initials, packaging.",
            secret_hint=True,
        ),
    ),
    "keys": (
        AttributeField("key_type", "Key type", "Which keys (flat, car, intercom, safe)?", required=True),
        AttributeField("bundle", "Bundle / accessories", "Is there a bundle, key ring or case? Describe it."),
        AttributeField(
            "unique",
            "Unique features",
            "Describe distinctive cuts or marks, if that is safe to share.",
            found_question="Describe distinctive features without making a copy possible.",
        ),
    ),
    "other": (
        AttributeField("item", "Item", "Describe the item: what it is and what it is for.", required=True),
        AttributeField("appearance", "Appearance", "What does it look like? Colour, shape, size.", required=True),
        AttributeField("tags", "Extra details", "Give up to three details separated by commas (e.g. new, boxed, with receipt)."),
    ),
}

RISKY_CATEGORIES = frozenset({"electronics", "document", "valuable", "keys"})

CATEGORY_WARNINGS: Dict[str, str] = {
    "document": "📄 Do not post documents with visible personal data. Blur it on photos and hand the original to the police or the issuing office.",
    "electronics": "📱 Do not reveal the full serial number of a device. Keep unique details for the secret questions.",
    "wear": "🎒 Bags and suitcases: photograph from a safe distance, do not open them, and call 112 if in doubt.",
    "valuable": "💍 If the item looks suspicious, photograph it from a safe distance and call 112 if in doubt.",
    "keys": "🔑 If a bundle looks suspicious, do not touch it and call 112.",
}

VOLUNTEER_CATEGORY = "pet"

FLOW_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    FlowName.LOST: ("lost", "i lost", "/lost"),
    FlowName.FOUND: ("found", "i found", "/found"),
    FlowName.VOLUNTEER: ("volunteer", "/volunteer"),
    FlowName.MY: ("my listings", "/my"),
}

FLOW_LABELS: Dict[str, str] = {
    FlowName.LOST: "I lost something",
    FlowName.FOUND: "I found something",
    FlowName.OWNER: "Owner check",
    FlowName.VOLUNTEER: "Volunteer",
    FlowName.MY: "My listings",
}

NOTIFICATION_KEYWORDS = frozenset({"notifications", "notification", "/notifications"})
CANCEL_KEYWORDS = frozenset({"/cancel", "cancel"})
BACK_KEYWORDS = frozenset({"/back", "back"})
PREVIEW_KEYWORDS = frozenset({"/preview", "draft"})
SKIP_KEYWORDS = frozenset({"/skip", "skip"})
NEXT_KEYWORDS = frozenset({"/next", "next", "done"})


def normalize_category(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    lower = str(value).strip().lower()
    return CATEGORY_ALIASES.get(lower, lower)


def category(value: Optional[str]) -> Optional[Category]:
    normalized = normalize_category(value)
    for option in CATEGORIES:
        if option.id == normalized:
            return option
    return None


def category_title(value: Optional[str]) -> str:
    option = category(value)
    if option is None:
        return value or "—"
    return option.title


def fields_for(value: Optional[str]) -> Tuple[AttributeField, ...]:
    return CATEGORY_FIELDS.get(normalize_category(value) or "", ())


def match_intent(lower: str) -> Optional[str]:
    for flow, keywords in FLOW_KEYWORDS.items():
        for keyword in keywords:
            if lower == keyword or lower.startswith(f"{keyword} "):
                return flow
    return None


def is_skip(lower: str) -> bool:
    return lower in SKIP_KEYWORDS


def category_keyboard(flow: str, action: str = "category") -> Keyboard:
    rows: Keyboard = []
    for index in range(0, len(CATEGORIES), 2):
        rows.append(
            [
                Button.callback(f"{item.emoji} {item.title}", keyboards.payload(flow, action, item.id))
                for item in CATEGORIES[index:index + 2]
            ]
        )
    return rows
