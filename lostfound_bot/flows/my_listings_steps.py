"""My listings flow: browse own listings, toggle their status and edit fields."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..errors import AuthorizationError, ValidationError
from ..models import Button, FlowName, InboundEvent, Keyboard, Listing, ListingStatus, ListingType, Session
from ..services import keyboards
from ..services.flow_engine import Conversation, Step, Transition
from ..services.keyboards import CallbackAction
from . import cards, catalog, draft

LOGGER = logging.getLogger(__name__)

LIST_STEP = "my_list"
EDIT_MENU_STEP = "my_edit_menu"
LIST_LIMIT = 10

TITLE_MIN, TITLE_MAX = 5, 120
DESCRIPTION_MIN, DESCRIPTION_MAX = 10, 2000

EDIT_FIELDS = (
    ("title", "Title"),
    ("description", "Description"),
    ("category", "Category"),
    ("occurred", "Time"),
    ("location", "Location"),
    ("photos", "Photos"),
)


def edit_step_id(field: str) -> str:
    return f"my_edit_{field}"


def _button(text: str, action: str, value: Optional[str] = None) -> Button:
    return Button.callback(text, keyboards.payload(FlowName.MY, action, value))


def _owned(ctx: Conversation, listing_id: Optional[str]) -> Listing:
    listing = ctx.services.listings.require(listing_id or "")
    if listing.author_id != ctx.user_id:
        raise AuthorizationError(f"User {ctx.user_id} does not own listing {listing_id}")
    return listing


def _editing(payload: Dict[str, Any]) -> Optional[str]:
    return (payload.get("edit") or {}).get("listing_id")


class MyListStep(Step):
    id = LIST_STEP

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        listings = ctx.services.listings.list_by_author(ctx.user_id, limit=LIST_LIMIT)
        if not listings:
            ctx.reply(
                "You have no listings yet.",
                [[Button.callback("✖️ Close", keyboards.payload(FlowName.MY, "cancel"))]],
            )
            return None
        lines = ["Your listings:"]
        rows: Keyboard = []
        for position, listing in enumerate(listings, start=1):
            lines.append(cards.listing_line(position, listing))
            toggle = "🔒 Close" if listing.status == ListingStatus.ACTIVE else "🔓 Reopen"
            rows.append(
                [
                    _button(f"👁 {position}", "show", listing.id),
                    _button(toggle, "toggle", listing.id),
                    _button("✏️ Edit", "edit", listing.id),
                ]
            )
        rows.append([_button("🔄 Refresh", "refresh")])
        rows.append([Button.callback("✖️ Close", keyboards.payload(FlowName.MY, "cancel"))])
        ctx.reply("\n".join(lines), rows)
        return None

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action == "refresh":
            return Transition(LIST_STEP, session.payload)
        if action.action == "show":
            listing = _owned(ctx, action.value)
            ctx.reply(cards.listing_card(listing), [[_button("✏️ Edit", "edit", listing.id)]])
            return None
        if action.action == "toggle":
            listing = ctx.services.listings.toggle_status(action.value or "", ctx.user_id)
            LOGGER.info("Listing id=%s toggled to %s", listing.id, listing.status)
            ctx.notice("Listing reopened" if listing.status == ListingStatus.ACTIVE else "Listing closed")
            return Transition(LIST_STEP, session.payload)
        if action.action == "edit":
            listing = _owned(ctx, action.value)
            return Transition(EDIT_MENU_STEP, {"flow": FlowName.MY, "edit": {"listing_id": listing.id}})
        return super().on_callback(ctx, session, action)

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        ctx.reply("Pick a listing with the buttons above, or send /cancel to go to the menu.")
        return None


class MyEditMenuStep(Step):
    id = EDIT_MENU_STEP

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        listing = _owned(ctx, _editing(session.payload))
        rows: Keyboard = []
        for index in range(0, len(EDIT_FIELDS), 2):
            rows.append([_button(label, "edit_field", field) for field, label in EDIT_FIELDS[index:index + 2]])
        rows.extend(keyboards.flow_controls(FlowName.MY))
        ctx.reply(f"{cards.listing_card(listing)}\n\nWhat do you want to change?", rows)
        return None

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action == "edit_field" and action.value in dict(EDIT_FIELDS):
            return Transition(edit_step_id(action.value), session.payload)
        return super().on_callback(ctx, session, action)


class EditFieldStep(Step):
    """Base for the single-field editors; each one returns to the edit menu after saving."""

    field = ""
    prompt = ""

    def __init__(self) -> None:
        self.id = edit_step_id(self.field)

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        _owned(ctx, _editing(session.payload))
        ctx.reply(self.prompt, keyboards.flow_controls(FlowName.MY))
        return None

    def saved(self, ctx: Conversation, session: Session, text: str = "✅ Saved") -> Transition:
        ctx.reply(text)
        return Transition(EDIT_MENU_STEP, session.payload)

    def update(self, ctx: Conversation, session: Session, **fields: Any) -> Listing:
        listing = ctx.services.listings.update_fields(_editing(session.payload) or "", ctx.user_id, **fields)
        LOGGER.info("Listing id=%s edited: %s", listing.id, ", ".join(sorted(fields)))
        return listing


class EditTitleStep(EditFieldStep):
    field = "title"
    prompt = f"Send a new title ({TITLE_MIN} to {TITLE_MAX} characters)."

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        title = event.text.strip()
        if not TITLE_MIN <= len(title) <= TITLE_MAX:
            raise ValidationError(f"The title must be {TITLE_MIN} to {TITLE_MAX} characters long.")
        self.update(ctx, session, title=title)
        return self.saved(ctx, session)


class EditDescriptionStep(EditFieldStep):
    field = "description"
    prompt = f"Send a new description (at least {DESCRIPTION_MIN} characters)."

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        description = event.text.strip()
        if len(description) < DESCRIPTION_MIN:
            raise ValidationError(f"The description must be at least {DESCRIPTION_MIN} characters long.")
        self.update(ctx, session, description=description[:DESCRIPTION_MAX])
        return self.saved(ctx, session)


class EditCategoryStep(EditFieldStep):
    field = "category"

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        _owned(ctx, _editing(session.payload))
        ctx.reply(
            "Choose the new category.",
            catalog.category_keyboard(FlowName.MY, "edit_category") + keyboards.flow_controls(FlowName.MY),
        )
        return None

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action != "edit_category":
            return super().on_callback(ctx, session, action)
        option = catalog.category(action.value)
        if option is None:
            raise ValidationError("Unknown category")
        self.update(ctx, session, category=option.id)
        ctx.notice(f"Category: {option.title}")
        return Transition(EDIT_MENU_STEP, session.payload)

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        raise ValidationError("Choose the category with the buttons above.")


class EditOccurredStep(EditFieldStep):
    field = "occurred"
    prompt = "When did it happen? For example: today 14:30, 12.05 18:00. Send /skip to clear the time."

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        if catalog.is_skip(event.command):
            self.update(ctx, session, occurred_at=None)
            return self.saved(ctx, session, "✅ Time cleared")
        parsed = draft.parse_occurred_at(event.text)
        if parsed is None:
            raise ValidationError("I could not read the time. Try “today 14:30” or “12.05 18:00”.")
        self.update(ctx, session, occurred_at=parsed.isoformat())
        return self.saved(ctx, session)


class EditLocationStep(EditFieldStep):
    field = "location"
    prompt = "Send the new point as a location attachment. Send /skip to remove the location."

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        if event.location is not None:
            listing = _owned(ctx, _editing(session.payload))
            flow = ListingType.flow(listing.type) or FlowName.LOST
            public, _ = draft.generalize_location(flow, event.location, draft.EXACT)
            self.update(ctx, session, lat=public["latitude"], lng=public["longitude"])
            return self.saved(ctx, session)
        if catalog.is_skip(event.command):
            self.update(ctx, session, lat=None, lng=None)
            return self.saved(ctx, session, "✅ Location removed")
        raise ValidationError("Send a location attachment, or /skip to remove the location.")


class EditPhotosStep(EditFieldStep):
    field = "photos"
    prompt = (
        f"Attach up to {draft.MAX_PHOTOS} photos to replace the current ones. "
        "Send /clear to remove all photos or /skip to keep them."
    )

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        listing_id = _editing(session.payload) or ""
        listings = ctx.services.listings
        if event.photos:
            references: List[str] = []
            for attachment in event.photos[: draft.MAX_PHOTOS]:
                reference = draft.photo_reference({"url": attachment.url, "token": attachment.token})
                if reference and reference not in references:
                    references.append(reference)
            if not references:
                raise ValidationError("These attachments have no usable photo.")
            listings.replace_photos(listing_id, ctx.user_id, references)
            return self.saved(ctx, session, f"✅ Photos replaced ({len(references)})")
        if event.command == "/clear":
            listings.replace_photos(listing_id, ctx.user_id, [])
            return self.saved(ctx, session, "✅ Photos removed")
        if catalog.is_skip(event.command):
            return Transition(EDIT_MENU_STEP, session.payload)
        raise ValidationError("Attach photos, or send /clear or /skip.")


def build_steps() -> tuple:
    return (
        MyListStep(),
        MyEditMenuStep(),
        EditTitleStep(),
        EditDescriptionStep(),
        EditCategoryStep(),
        EditOccurredStep(),
        EditLocationStep(),
        EditPhotosStep(),
    )


BACK_TARGETS = {edit_step_id(field): EDIT_MENU_STEP for field, _ in EDIT_FIELDS}
