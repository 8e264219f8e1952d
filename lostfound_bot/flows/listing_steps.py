"""Steps of the lost and found wizards: category, attributes, photos, location, secrets, confirm."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..errors import ValidationError
from ..models import Button, FlowName, InboundEvent, Keyboard, Session
from ..services import keyboards
from ..services.flow_engine import Conversation, Step, Transition, evolve
from ..services.keyboards import CallbackAction
from ..services.listing_publisher import ListingPublisher
from . import catalog, draft

LOGGER = logging.getLogger(__name__)

FOUND_LEGAL_NOTICE = (
    "⚖️ A finder must try to return the item to its owner and report the find to the police "
    "or the local administration within 3 days. Valuables and documents are best handed over directly."
)
CONFIRM_LEGAL_NOTICE = (
    "Before publishing, confirm that the listing contains no personal data of others "
    "and that you will hand the item over only after the owner has been verified."
)


def step_id(flow: str, suffix: str) -> str:
    return f"{flow}_{suffix}"


class DraftStep(Step):
    suffix = ""

    def __init__(self, flow: str) -> None:
        self.flow = flow
        self.id = step_id(flow, self.suffix)

    @property
    def is_found(self) -> bool:
        return self.flow == FlowName.FOUND

    def sibling(self, suffix: str) -> str:
        return step_id(self.flow, suffix)

    def controls(self) -> Keyboard:
        return keyboards.flow_controls(self.flow)

    def button(self, text: str, action: str, value: Optional[str] = None) -> Button:
        return Button.callback(text, keyboards.payload(self.flow, action, value))


class CategoryStep(DraftStep):
    suffix = "category"

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        prompt = "What did you find? Choose a category." if self.is_found else "What did you lose? Choose a category."
        ctx.reply(prompt, catalog.category_keyboard(self.flow) + self.controls())
        return None

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        return self._choose(ctx, session, event.text)

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action != "category":
            return super().on_callback(ctx, session, action)
        return self._choose(ctx, session, action.value)

    def _choose(self, ctx: Conversation, session: Session, value: Optional[str]) -> Transition:
        option = catalog.category(value)
        if option is None:
            raise ValidationError("Choose a category with the buttons below.")

        def mutate(payload: Dict[str, Any]) -> None:
            listing = payload.setdefault("listing", {})
            listing["category"] = option.id
            listing["attributes"] = {}
            listing["pending_secrets"] = []
            meta = payload.setdefault("meta", {})
            meta["current_attribute_key"] = None
            meta["photo_acknowledged"] = False

        if ctx.is_callback:
            ctx.notice(f"Category: {option.title}")
        if self.is_found:
            hints = [catalog.CATEGORY_WARNINGS[option.id]] if option.id in catalog.CATEGORY_WARNINGS else []
            hints.append("🚓 Remember to report the find to the police within 3 days.")
            ctx.reply_after_save("\n".join(hints))
        return Transition(self.sibling("attributes"), evolve(session.payload, mutate))


class AttributesStep(DraftStep):
    suffix = "attributes"

    def prepare(self, ctx: Conversation, payload: Dict[str, Any]) -> Optional[Transition]:
        if not draft.listing_of(payload).get("category"):
            return Transition(self.sibling("category"), payload)
        item = draft.next_unanswered_field(payload)
        if item is None:
            return Transition(self.sibling("photo"), payload)
        if draft.meta_of(payload).get("current_attribute_key") != item.key:
            return Transition(
                self.id,
                evolve(payload, lambda clone: clone.setdefault("meta", {}).update(current_attribute_key=item.key)),
            )
        return None

    def rewind(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return evolve(payload, draft.forget_last_answer)

    def _current(self, payload: Dict[str, Any]) -> Optional[catalog.AttributeField]:
        key = draft.meta_of(payload).get("current_attribute_key")
        for item in catalog.fields_for(draft.listing_of(payload).get("category")):
            if item.key == key:
                return item
        return draft.next_unanswered_field(payload)

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        item = self._current(session.payload)
        if item is None:
            return Transition(self.id, session.payload)
        lines: List[str] = []
        if not draft.listing_of(session.payload).get("attributes"):
            lines.extend(["Now a few questions about the item. Send /skip to leave an optional field empty.", ""])
        lines.append(item.question_for(self.flow))
        if item.hint:
            lines.append(item.hint)
        lines.append("(required)" if item.required else "(optional, /skip to leave empty)")
        ctx.reply("\n".join(lines), self.controls())
        return None

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        item = self._current(session.payload)
        if item is None:
            return Transition(self.id, session.payload)
        text = event.text.strip()
        if catalog.is_skip(event.command):
            if item.required:
                raise ValidationError(f"“{item.label}” is required, please answer it.")
            value: Optional[str] = None
        elif item.required and len(text) < 2:
            raise ValidationError("Please give a little more detail (at least 2 characters).")
        elif not text:
            raise ValidationError("Send an answer, or /skip to leave this field empty.")
        else:
            value = text
        return Transition(self.id, evolve(session.payload, lambda clone: draft.record_answer(clone, item, value)))


class PhotoStep(DraftStep):
    suffix = "photo"

    def _needs_acknowledgement(self, payload: Dict[str, Any]) -> bool:
        return (
            self.is_found
            and draft.listing_of(payload).get("category") in catalog.RISKY_CATEGORIES
            and not draft.meta_of(payload).get("photo_acknowledged")
        )

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        if self._needs_acknowledgement(session.payload):
            category = draft.listing_of(session.payload).get("category")
            warning = catalog.CATEGORY_WARNINGS.get(category, "")
            ctx.reply(
                f"{warning}\nDo not show serial numbers, document numbers or other identifying details on photos.",
                [[self.button("✅ Got it", "photo_ack")]] + self.controls(),
            )
            return None
        count = len(draft.listing_of(session.payload).get("photos") or [])
        if count:
            text = f"Photos attached: {count}/{draft.MAX_PHOTOS}. Send more, /next to continue or /skip."
        else:
            text = f"Attach up to {draft.MAX_PHOTOS} photos of the item, or send /skip to continue without photos."
        ctx.reply(text, self.controls())
        return None

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action != "photo_ack":
            return super().on_callback(ctx, session, action)
        ctx.notice("Thanks")
        return Transition(
            self.id,
            evolve(session.payload, lambda clone: clone.setdefault("meta", {}).update(photo_acknowledged=True)),
        )

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        if self._needs_acknowledgement(session.payload):
            raise ValidationError("Please confirm the safety note with the button first.")
        if event.photos:
            added: List[int] = []

            def mutate(payload: Dict[str, Any]) -> None:
                added.append(draft.append_photos(payload, event.photos)[0])

            payload = evolve(session.payload, mutate)
            if not added[0]:
                raise ValidationError("These photos are already attached or the limit is reached. Send /next.")
            if len(draft.listing_of(payload).get("photos") or []) >= draft.MAX_PHOTOS:
                return Transition(self.sibling("location"), payload)
            return Transition(self.id, payload)
        if event.command in catalog.NEXT_KEYWORDS:
            if not draft.listing_of(session.payload).get("photos"):
                raise ValidationError("Attach at least one photo, or send /skip.")
            return Transition(self.sibling("location"), session.payload)
        if catalog.is_skip(event.command):
            return Transition(self.sibling("location"), session.payload)
        raise ValidationError("Send a photo, /next when you are done, or /skip.")


class LocationStep(DraftStep):
    suffix = "location"

    @property
    def next_step(self) -> str:
        return self.sibling("secrets") if self.is_found else self.sibling("confirm")

    def prepare(self, ctx: Conversation, payload: Dict[str, Any]) -> Optional[Transition]:
        if draft.meta_of(payload).get("location_stage") == draft.STAGE_COMPLETE:
            return Transition(self.next_step, payload)
        return None

    def rewind(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return evolve(payload, lambda clone: clone.setdefault("meta", {}).update(location_stage=None))

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        stage = draft.meta_of(session.payload).get("location_stage")
        mode = draft.listing_of(session.payload).get("location_mode")
        if stage == draft.STAGE_TRANSIT:
            ctx.reply(
                "Describe the route: transport line, direction, stops. Send /skip if you do not know.",
                self.controls(),
            )
        elif stage == draft.STAGE_DETAILS:
            if mode == draft.EXACT:
                prompt = "Send the point as a location attachment. You can add a short note about the place."
            else:
                prompt = "Send an approximate point or describe the area in a few words."
            ctx.reply(f"{prompt}\nSend /skip to continue without it.", self.controls())
        elif stage == draft.STAGE_TIME:
            ctx.reply(
                "When did it happen? For example: now, today 14:30, yesterday 9, 12.05 18:00. Send /skip if unsure.",
                self.controls(),
            )
        else:
            lines = ["Where did it happen? Choose how precisely you know the place."]
            if self.is_found:
                lines.append("For found items the map shows only an approximate area.")
            rows: Keyboard = [
                [self.button(f"📍 {draft.MODE_LABELS[mode_id]}", "location_mode", mode_id)]
                for mode_id in draft.LOCATION_MODES
            ]
            ctx.reply("\n".join(lines), rows + self.controls())
        return None

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action != "location_mode":
            return super().on_callback(ctx, session, action)
        if action.value not in draft.LOCATION_MODES:
            raise ValidationError("Unknown location mode.")
        ctx.notice(draft.MODE_LABELS[action.value])
        if self.is_found:
            ctx.reply_after_save(FOUND_LEGAL_NOTICE)
        stage = draft.STAGE_TRANSIT if action.value == draft.TRANSIT else draft.STAGE_DETAILS

        def mutate(payload: Dict[str, Any]) -> None:
            payload.setdefault("listing", {})["location_mode"] = action.value
            payload.setdefault("meta", {})["location_stage"] = stage

        return Transition(self.id, evolve(session.payload, mutate))

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        stage = draft.meta_of(session.payload).get("location_stage")
        skip = catalog.is_skip(event.command)
        text = event.text.strip()
        if stage == draft.STAGE_TRANSIT:
            if not skip and len(text) < 4:
                raise ValidationError("Describe the route in a few words, or send /skip.")
            transit = None if skip else text[: draft.TRANSIT_LIMIT]
            return self._advance(session, draft.STAGE_DETAILS, transit=transit)
        if stage == draft.STAGE_DETAILS:
            if skip and event.location is None:
                return self._advance(session, draft.STAGE_TIME)
            if event.location is None and not text:
                raise ValidationError("Send a location attachment, a short description, or /skip.")
            updates: Dict[str, Any] = {}
            if event.location is not None:
                mode = draft.listing_of(session.payload).get("location_mode") or draft.APPROX
                public, original = draft.generalize_location(self.flow, event.location, mode)
                updates["location"] = public
                updates["location_original"] = original
            if text and not skip:
                updates["location_note"] = text[: draft.NOTE_LIMIT]
            return self._advance(session, draft.STAGE_TIME, **updates)
        if stage == draft.STAGE_TIME:
            if skip:
                return self._advance(session, draft.STAGE_COMPLETE, occurred_at=None)
            parsed = draft.parse_occurred_at(text)
            if parsed is None:
                raise ValidationError("I could not read the time. Try “today 14:30” or “12.05 18:00”, or send /skip.")
            return self._advance(session, draft.STAGE_COMPLETE, occurred_at=parsed.isoformat())
        raise ValidationError("Choose how precisely you know the place with the buttons above.")

    def _advance(self, session: Session, stage: str, **listing_updates: Any) -> Transition:
        def mutate(payload: Dict[str, Any]) -> None:
            payload.setdefault("listing", {}).update(listing_updates)
            payload.setdefault("meta", {})["location_stage"] = stage

        payload = evolve(session.payload, mutate)
        if stage == draft.STAGE_COMPLETE:
            return Transition(self.next_step, payload)
        return Transition(self.id, payload)


class SecretsStep(DraftStep):
    suffix = "secrets"

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        lines = [
            "Add up to 3 secret questions only the real owner can answer, one per line:",
            "Question :: answer",
            "Answers are stored encrypted and are never shown publicly. Send /skip to publish without questions.",
        ]
        hints = draft.listing_of(session.payload).get("pending_secrets") or []
        if hints:
            lines.append("")
            lines.append("Details you marked as unique:")
            lines.extend(f"- {hint.get('value')}" for hint in hints)
        ctx.reply("\n".join(lines), self.controls())
        return None

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        if catalog.is_skip(event.command):
            questions: List[str] = []
            sealed: List[Dict[str, Any]] = []
        else:
            entries = draft.parse_secret_entries(event.text)
            sealed = ctx.services.vault.encrypt_entries(entries)
            questions = [entry["question"] for entry in sealed]

        def mutate(payload: Dict[str, Any]) -> None:
            listing = payload.setdefault("listing", {})
            listing["secret_questions"] = questions
            listing["encrypted_secrets"] = sealed

        return Transition(self.sibling("confirm"), evolve(session.payload, mutate))


class ConfirmStep(DraftStep):
    suffix = "confirm"

    def _needs_legal(self, payload: Dict[str, Any]) -> bool:
        return self.is_found and not draft.meta_of(payload).get("legal_accepted")

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        if self._needs_legal(session.payload):
            ctx.reply(
                CONFIRM_LEGAL_NOTICE,
                [[self.button("✅ I agree", "confirm", "legal_ack")]] + self.controls(),
            )
            return None
        ctx.reply(
            draft.preview(self.flow, session.payload),
            [
                [self.button("✅ Publish", "confirm", "publish")],
                [self.button("✏️ Edit description", "confirm", "edit")],
                [self.button("✖️ Cancel", "cancel")],
            ],
        )
        return None

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        raise ValidationError("Use the buttons above to publish or edit the listing.")

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action != "confirm":
            return super().on_callback(ctx, session, action)
        if action.value == "legal_ack":
            ctx.notice("Thanks")
            return Transition(
                self.id,
                evolve(session.payload, lambda clone: clone.setdefault("meta", {}).update(legal_accepted=True)),
            )
        if action.value == "edit":
            def mutate(payload: Dict[str, Any]) -> None:
                listing = payload.setdefault("listing", {})
                listing["attributes"] = {}
                listing["pending_secrets"] = []
                payload.setdefault("meta", {})["current_attribute_key"] = None

            ctx.notice("Let's go through the description again")
            return Transition(self.sibling("attributes"), evolve(session.payload, mutate))
        if action.value == "publish":
            if self._needs_legal(session.payload):
                raise ValidationError("Please confirm the rules first.")
            return Transition(None, {"listing": draft.build_listing(self.flow, session.payload)})
        return super().on_callback(ctx, session, action)


def publish_on_finish(flow: str, publisher: ListingPublisher):
    """Builds the ``on_finish`` hook that publishes the draft and reports its matches.

    It runs after the confirm session has been retired, so a repeated or stale
    publish press fails on the session version before any listing is written.
    """

    def publish(ctx: Conversation, finished: Dict[str, Any]) -> None:
        new_listing = finished.get("listing")
        if new_listing is None:
            return
        result = publisher.publish(ctx.user_id, new_listing)
        ctx.notice("Published")
        listing_id = result.listing.id
        ctx.reply(f"✅ Listing published: {result.listing.title}", keyboards.show_listing(listing_id))
        matches = result.matches
        if not matches:
            ctx.reply("No matching listings yet. We will notify you when something similar appears.")
        for match in matches:
            ctx.reply(
                f"🔎 Possible match: {match.title} (score {match.score})",
                keyboards.match_buttons(flow, match.id, listing_id),
            )
        settings = ctx.services.settings
        ctx.reply("What next?", keyboards.main_menu(settings.front_origin, settings.donation_url))

    return publish


def build_steps(flow: str) -> tuple:
    steps: List[Step] = [CategoryStep(flow), AttributesStep(flow), PhotoStep(flow), LocationStep(flow)]
    if flow == FlowName.FOUND:
        steps.append(SecretsStep(flow))
    steps.append(ConfirmStep(flow))
    return tuple(steps)
