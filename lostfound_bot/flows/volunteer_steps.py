"""Volunteer flow: share a location, browse lost pets nearby and offer help."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..errors import NotFoundError, ValidationError
from ..models import (
    Button,
    FlowName,
    InboundEvent,
    Keyboard,
    Listing,
    ListingStatus,
    ListingType,
    NotificationType,
    Session,
)
from ..services import keyboards
from ..services.flow_engine import Conversation, Step, Transition, evolve
from ..services.keyboards import CallbackAction
from . import cards, catalog

LOGGER = logging.getLogger(__name__)

INTRO_STEP = "volunteer_intro"
LOCATION_STEP = "volunteer_location"
LIST_STEP = "volunteer_list"
LIST_LIMIT = 5


def _button(text: str, action: str, value: Optional[str] = None) -> Button:
    return Button.callback(text, keyboards.payload(FlowName.VOLUNTEER, action, value))


def _with_location(payload: Dict[str, Any], event: InboundEvent) -> Dict[str, Any]:
    def mutate(clone: Dict[str, Any]) -> None:
        clone["location"] = (
            {"latitude": event.location.latitude, "longitude": event.location.longitude}
            if event.location is not None
            else None
        )

    return evolve(payload, mutate)


class VolunteerIntroStep(Step):
    id = INTRO_STEP

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        ctx.reply(
            "🐾 Thank you for helping! Share your location to see lost pets nearby, or open the full list.",
            [
                [_button("📍 Share location", "share_location")],
                [_button("📋 Show the list", "list"), _button("⏭ Skip", "skip")],
                [Button.callback("✖️ Cancel", keyboards.payload(FlowName.VOLUNTEER, "cancel"))],
            ],
        )
        return None

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        if event.location is not None:
            return Transition(LIST_STEP, _with_location(session.payload, event))
        if catalog.is_skip(event.command):
            return Transition(LIST_STEP, session.payload)
        raise ValidationError("Send your location as an attachment, or use the buttons above.")

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action == "share_location":
            return Transition(LOCATION_STEP, session.payload)
        if action.action in ("list", "skip"):
            return Transition(LIST_STEP, session.payload)
        return super().on_callback(ctx, session, action)


class VolunteerLocationStep(Step):
    id = LOCATION_STEP

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        ctx.reply(
            "Send your location as an attachment. Send /skip to see the list without distances.",
            keyboards.flow_controls(FlowName.VOLUNTEER),
        )
        return None

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        if event.location is not None:
            return Transition(LIST_STEP, _with_location(session.payload, event))
        if catalog.is_skip(event.command):
            return Transition(LIST_STEP, session.payload)
        raise ValidationError("I need a location attachment here, or send /skip.")


class VolunteerListStep(Step):
    id = LIST_STEP

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        self._render(ctx, session.payload)
        return None

    def _render(self, ctx: Conversation, payload: Dict[str, Any]) -> None:
        location = payload.get("location") or {}
        listings = ctx.services.listings.volunteer_candidates(
            catalog.VOLUNTEER_CATEGORY,
            latitude=location.get("latitude"),
            longitude=location.get("longitude"),
            limit=LIST_LIMIT,
        )
        settings = ctx.services.settings
        rows: Keyboard = []
        if listings:
            lines = ["Lost pets that need help:"]
            for position, listing in enumerate(listings, start=1):
                lines.append(cards.listing_line(position, listing))
                rows.append([_button(f"👁 {position}. {listing.title[:40]}", "preview", listing.id)])
        else:
            lines = ["No lost pets need help right now. Check back later."]
        rows.append([_button("🔄 Refresh", "refresh")])
        if settings.front_link_allowed:
            rows.append([Button.link("🗺️ Open map", settings.front_origin)])
        else:
            lines.append(f"Map: {settings.front_origin}")
        rows.extend(keyboards.flow_controls(FlowName.VOLUNTEER))
        ctx.reply("\n".join(lines), rows)

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        if event.location is not None:
            return Transition(LIST_STEP, _with_location(session.payload, event))
        ctx.reply("Pick a listing with the buttons above, or send a new location to re-sort the list.")
        return None

    def on_callback(self, ctx: Conversation, session: Session, action: CallbackAction) -> Optional[Transition]:
        if action.action in ("refresh", "list"):
            self._render(ctx, session.payload)
            return None
        if action.action == "preview":
            listing = self._eligible(ctx, action.value)
            ctx.reply(
                cards.listing_card(listing),
                [
                    [_button("🤝 I will help", "accept", listing.id)],
                    [_button("⬅️ Back to the list", "list")],
                ],
            )
            return None
        if action.action == "accept":
            self._accept(ctx, self._eligible(ctx, action.value))
            return None
        return super().on_callback(ctx, session, action)

    def _eligible(self, ctx: Conversation, listing_id: Optional[str]) -> Listing:
        listing = ctx.services.listings.get(listing_id or "")
        if (
            listing is None
            or listing.status != ListingStatus.ACTIVE
            or listing.type != ListingType.LOST
            or listing.category != catalog.VOLUNTEER_CATEGORY
        ):
            raise NotFoundError(f"Listing {listing_id} is not open for volunteers")
        return listing

    def _accept(self, ctx: Conversation, listing: Listing) -> None:
        services = ctx.services
        if listing.author_id == ctx.user_id:
            raise ValidationError("This is your own listing.")
        volunteer = ctx.user
        if volunteer is None or not volunteer.phone:
            ctx.notice("Phone number needed")
            ctx.reply(
                "Share your phone number so the owner can reach you, then press the button again.",
                [[Button.request_contact("📱 Send my number")]],
            )
            return
        if not services.listings.create_assignment(listing.id, volunteer.id):
            ctx.notice("You are already helping with this listing")
            return
        LOGGER.info("Volunteer user_id=%s assigned to listing_id=%s", volunteer.id, listing.id)
        owner = services.users.get(listing.author_id)
        owner_phone = owner.phone if owner else None
        services.notifier.create(
            listing.author_id,
            NotificationType.VOLUNTEER_ASSIGNED,
            listing_id=listing.id,
            title="A volunteer joined the search",
            body=f"A volunteer is helping to find “{listing.title}”. Phone: {volunteer.phone}",
            payload={"listingId": listing.id, "listingTitle": listing.title, "volunteerPhone": volunteer.phone},
        )
        services.notifier.create(
            volunteer.id,
            NotificationType.VOLUNTEER_ACTIVE,
            listing_id=listing.id,
            title="You are helping",
            body=f"You are helping to find “{listing.title}”. Owner's phone: {owner_phone or 'not shared yet'}",
            payload={"listingId": listing.id, "listingTitle": listing.title, "ownerPhone": owner_phone},
        )
        ctx.notice("Thank you!")
        lines: List[str] = [f"🤝 Thank you for helping with “{listing.title}”."]
        if owner_phone:
            lines.append(f"Owner's phone: {owner_phone}")
        else:
            lines.append("The owner has not shared a phone yet; they have received your number.")
        ctx.reply("\n".join(lines), keyboards.show_listing(listing.id))
        services.notifier.push(
            listing.author_id,
            f"🐾 A volunteer is helping to find “{listing.title}”. Phone: {volunteer.phone}",
            keyboards.show_listing(listing.id),
        )
