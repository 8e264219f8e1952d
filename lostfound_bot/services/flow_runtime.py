"""Routes inbound events to flow steps and applies the resulting transitions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from ..database import utcnow
from ..errors import AuthorizationError, NotFoundError, PersistenceError, StaleSessionError, ValidationError
from ..flows import cards, catalog, draft
from ..models import FlowName, InboundEvent, ListingStatus, ListingType, Session
from ..repositories.session_repository import IDLE_STEP
from . import keyboards
from .bot_services import BotServices
from .flow_engine import Conversation, FlowRegistry, Transition
from .keyboards import CallbackAction
from .notifier import render as render_notification
from .owner_verification import OwnerVerification

LOGGER = logging.getLogger(__name__)

MAX_HOPS = 12
NOTIFICATION_LIMIT = 10

GENERIC_ERROR = "Something went wrong. Please try again or send /cancel."
RETRY_ERROR = "We could not save your last action. Please try again."
UNAVAILABLE = "This item is no longer available."
DENIED = "This action is not available to you."


class FlowRuntime:
    """Entry point for every inbound event.

    Each event reloads the session from the store, lets the current step compute
    the next state, persists it and only then renders the new step. Errors are
    caught here and turned into short user-facing messages.
    """

    def __init__(self, services: BotServices, registry: FlowRegistry, verification: OwnerVerification) -> None:
        self._services = services
        self._registry = registry
        self._verification = verification

    @property
    def registry(self) -> FlowRegistry:
        return self._registry

    def handle(self, event: InboundEvent) -> Conversation:
        ctx = Conversation(event.max_user_id, self._services, callback_id=event.callback_id)
        try:
            ctx.user = self._services.users.ensure(event.max_user_id, event.contact_phone)
            if event.kind == InboundEvent.CALLBACK:
                self._on_callback(ctx, event)
            elif event.kind == InboundEvent.STARTED:
                ctx.reply("👋 Hi! I help lost things find their way home.")
                self.show_menu(ctx)
            else:
                self._on_message(ctx, event)
        except ValidationError as exc:
            ctx.fail(str(exc))
        except NotFoundError as exc:
            LOGGER.info("Not found for max_id=%s: %s", event.max_user_id, exc)
            ctx.fail(UNAVAILABLE)
        except AuthorizationError as exc:
            LOGGER.warning("Denied for max_id=%s: %s", event.max_user_id, exc)
            ctx.fail(DENIED)
        except StaleSessionError as exc:
            LOGGER.warning("%s", exc)
            ctx.fail(RETRY_ERROR)
        except PersistenceError:
            LOGGER.exception("Store failure while handling an event for max_id=%s", event.max_user_id)
            ctx.fail(RETRY_ERROR)
        except Exception:
            LOGGER.exception("Unhandled error while handling an event for max_id=%s", event.max_user_id)
            ctx.fail(GENERIC_ERROR)
        return ctx

    # -- state ---------------------------------------------------------

    def load_session(self, ctx: Conversation) -> Session:
        sessions = self._services.sessions
        session = sessions.load(ctx.user_id)
        if session.is_idle:
            return session
        if not self._registry.has(session.flow) or not self._registry.get(session.flow).has(session.step):
            LOGGER.warning("Dropping session of user_id=%s at unknown %s/%s", ctx.user_id, session.flow, session.step)
            sessions.delete(ctx.user_id)
            return self._idle(ctx.user_id)
        if self._expired(session):
            LOGGER.info("Session of user_id=%s expired", ctx.user_id)
            sessions.delete(ctx.user_id)
            ctx.reply("Your previous draft expired, so we started over.")
            return self._idle(ctx.user_id)
        return session

    def _expired(self, session: Session) -> bool:
        ttl = self._services.settings.session_ttl_minutes
        if ttl <= 0 or not session.updated_at:
            return False
        try:
            updated = datetime.fromisoformat(session.updated_at)
        except ValueError:
            return False
        return utcnow() - updated > timedelta(minutes=ttl)

    @staticmethod
    def _idle(user_id: str) -> Session:
        return Session(user_id=user_id, step=IDLE_STEP, flow=None, payload={})

    def apply(self, ctx: Conversation, session: Session, transition: Optional[Transition]) -> Session:
        """Persists each transition before the target step renders; follows redirects."""

        hops = 0
        while transition is not None:
            hops += 1
            if hops > MAX_HOPS:
                raise RuntimeError(f"Too many redirects from {session.flow}/{session.step}")
            flow_name = transition.flow or session.flow
            if transition.step is None:
                self._services.sessions.retire(session)
                ctx.flush()
                LOGGER.info("Flow %s finished for user_id=%s", flow_name, session.user_id)
                if transition.render and self._registry.has(flow_name):
                    on_finish = self._registry.get(flow_name).on_finish
                    if on_finish is not None:
                        on_finish(ctx, transition.payload)
                return self._idle(session.user_id)

            flow = self._registry.get(flow_name)
            step = flow.step(transition.step)
            payload = transition.payload
            redirect = step.prepare(ctx, payload)
            if redirect is not None:
                target_flow = redirect.flow or flow.name
                if redirect.step != step.id or target_flow != flow.name:
                    transition = Transition(redirect.step, redirect.payload, target_flow, transition.render)
                    continue
                payload = redirect.payload

            session = self._services.sessions.save(session, step=step.id, flow=flow.name, payload=payload)
            ctx.flush()
            if not transition.render:
                return session
            transition = step.enter(ctx, session)
        return session

    def start_flow(self, ctx: Conversation, flow_name: str) -> Session:
        flow = self._registry.get(flow_name)
        if not flow.startable:
            raise NotFoundError(f"Flow '{flow_name}' cannot be started directly")
        LOGGER.info("Starting flow %s for user_id=%s", flow_name, ctx.user_id)
        return self._restart(ctx, Transition(flow.first_step_id(), flow.initial_payload(), flow=flow.name))

    def _restart(self, ctx: Conversation, transition: Transition) -> Session:
        self._services.sessions.delete(ctx.user_id)
        return self.apply(ctx, self._idle(ctx.user_id), transition)

    def go_back(self, ctx: Conversation, session: Session) -> None:
        flow = self._registry.get(session.flow)
        target = flow.previous(session.step)
        if target is None:
            ctx.notice("You are already at the first step")
            return
        if ctx.is_callback:
            ctx.notice("Going back")
        payload = flow.step(target).rewind(session.payload)
        self.apply(ctx, session, Transition(target, payload))

    def cancel(self, ctx: Conversation) -> None:
        self._services.sessions.delete(ctx.user_id)
        LOGGER.info("Session cancelled by user_id=%s", ctx.user_id)
        ctx.notice("Cancelled")
        self.show_menu(ctx, "Cancelled. What would you like to do?")

    # -- views ---------------------------------------------------------

    def show_menu(self, ctx: Conversation, text: str = "Choose what you would like to do:") -> None:
        settings = self._services.settings
        ctx.reply(text, keyboards.main_menu(settings.front_origin, settings.donation_url))

    def show_notifications(self, ctx: Conversation) -> None:
        notifier = self._services.notifier
        items = notifier.list_for_user(ctx.user_id, limit=NOTIFICATION_LIMIT)
        if not items:
            ctx.reply("You have no notifications yet.")
            return
        for item in items:
            text, buttons = render_notification(item)
            ctx.reply(text, buttons)
        notifier.mark_read(items)

    def show_listing(self, ctx: Conversation, listing_id: Optional[str]) -> None:
        listing = self._services.listings.get(listing_id or "")
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} does not exist")
        public_pet = (
            listing.status == ListingStatus.ACTIVE
            and listing.type == ListingType.LOST
            and listing.category == catalog.VOLUNTEER_CATEGORY
        )
        allowed = (
            listing.author_id == ctx.user_id
            or public_pet
            or ctx.user_id in self._services.notifier.repository.users_with_listing_notification(listing.id)
        )
        if not allowed:
            raise NotFoundError(f"Listing {listing.id} is not visible to user {ctx.user_id}")
        ctx.reply(cards.listing_card(listing))

    # -- routing -------------------------------------------------------

    def _on_message(self, ctx: Conversation, event: InboundEvent) -> None:
        command = event.command
        if event.contact_phone:
            self._on_contact(ctx)
            if not command:
                return
        if command in ("/start", "/menu", "menu"):
            self.show_menu(ctx)
            return
        if command in catalog.CANCEL_KEYWORDS:
            self.cancel(ctx)
            return

        session = self.load_session(ctx)
        if not session.is_idle:
            if command in catalog.BACK_KEYWORDS:
                self.go_back(ctx, session)
                return
            if command in catalog.PREVIEW_KEYWORDS:
                ctx.reply(draft.preview(session.flow, session.payload))
                return
            step = self._registry.step(session.flow, session.step)
            self.apply(ctx, session, step.on_message(ctx, session, event))
            return

        intent = catalog.match_intent(command)
        if intent:
            self.start_flow(ctx, intent)
        elif command in catalog.NOTIFICATION_KEYWORDS:
            self.show_notifications(ctx)
        elif command:
            self.show_menu(ctx, "I did not understand that. Choose one of the options:")
        else:
            self.show_menu(ctx)

    def _on_contact(self, ctx: Conversation) -> None:
        if ctx.user is None or not ctx.user.phone:
            ctx.reply("I could not read that phone number. Please share the contact from your MAX profile.")
            return
        closed = self._verification.handle_contact_shared(ctx)
        if closed:
            ctx.reply("📱 Thanks, your number is saved and the contacts were exchanged.")
        else:
            ctx.reply("📱 Thanks, your number is saved.")

    def _on_callback(self, ctx: Conversation, event: InboundEvent) -> None:
        action = keyboards.parse_payload(event.callback_payload)
        if action is None:
            ctx.notice("Unknown action")
            return
        if action.action == "start":
            if not self._registry.has(action.flow) or not self._registry.get(action.flow).startable:
                raise NotFoundError(f"Flow '{action.flow}' cannot be started")
            ctx.notice(catalog.FLOW_LABELS.get(action.flow, action.flow))
            self.start_flow(ctx, action.flow)
            return
        if action.flow == FlowName.MENU:
            self._on_menu(ctx, action)
            return
        if action.action == "cancel":
            self.cancel(ctx)
            return
        if action.flow == FlowName.OWNER and action.action in ("review", "contact_request", "share_contact"):
            getattr(self._verification, action.action)(ctx, action.value)
            return
        if action.action == "match":
            self._on_match(ctx, action)
            return

        session = self.load_session(ctx)
        if session.is_idle:
            ctx.notice("This button has expired")
            self.show_menu(ctx)
            return
        if session.flow != action.flow:
            ctx.notice("This button belongs to another scenario")
            return
        if action.action == "back":
            self.go_back(ctx, session)
            return
        step = self._registry.step(session.flow, session.step)
        self.apply(ctx, session, step.on_callback(ctx, session, action))

    def _on_menu(self, ctx: Conversation, action: CallbackAction) -> None:
        if action.action == "notifications":
            ctx.notice("Notifications")
            self.show_notifications(ctx)
        elif action.action == "show_listing":
            self.show_listing(ctx, action.value)
        elif action.action == "open":
            self.show_menu(ctx)
        else:
            ctx.notice("Unknown action")

    def _on_match(self, ctx: Conversation, action: CallbackAction) -> None:
        target_id, _, origin_id = (action.value or "").partition("|")
        listings = self._services.listings
        origin = listings.get(origin_id)
        if origin is None:
            raise NotFoundError(f"Listing {origin_id} does not exist")
        if origin.author_id != ctx.user_id:
            raise AuthorizationError(f"User {ctx.user_id} does not own listing {origin_id}")
        target = listings.get(target_id)
        if target is None or target.status != ListingStatus.ACTIVE:
            raise NotFoundError(f"Listing {target_id} is not available")
        if target.author_id == ctx.user_id:
            ctx.notice("This is your own listing")
            return
        if origin.type == ListingType.LOST and target.type == ListingType.FOUND:
            transition = self._verification.start_check(ctx, origin, target)
            if transition is not None:
                ctx.notice("Ownership check started")
                self._restart(ctx, transition)
            return
        if origin.type == ListingType.FOUND and target.type == ListingType.LOST:
            ctx.notice("Thanks")
            ctx.reply(
                "We saved this possible match. The owner has to start the ownership check, "
                "and you will get a notification when they do.",
                keyboards.show_listing(target.id),
            )
            return
        raise ValidationError("These listings cannot be matched.")
