"""Two-party ownership check: challenge questions, holder review and contact exchange."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from ..errors import AuthorizationError, NotFoundError, ValidationError
from ..models import (
    Button,
    Chat,
    ChatStatus,
    FlowName,
    Listing,
    NotificationStatus,
    NotificationType,
)
from . import keyboards
from .bot_services import BotServices
from .flow_engine import Conversation, Transition

LOGGER = logging.getLogger(__name__)

INTRO_STEP = "owner_check_intro"
QUESTION_STEP = "owner_check_question"
WAITING_STEP = "owner_check_waiting"

FALLBACK_QUESTION = "Name a detail of the item that only its owner would know."

STATUS_NOTICES = {
    ChatStatus.PENDING: "The finder has not reviewed the answers yet",
    ChatStatus.ACTIVE: "This owner has already been confirmed",
    ChatStatus.DECLINED: "This request was declined",
    ChatStatus.CLOSED: "Contacts have already been exchanged",
}


def mask_phone(phone: Optional[str]) -> str:
    digits = re.sub(r"\D", "", phone or "")
    return "*" * max(len(digits), 8)


def request_phone_keyboard() -> List[List[Button]]:
    return [[Button.request_contact("📱 Send my number")]]


class OwnerVerification:
    """Drives a Chat of type OWNER_CHECK through PENDING, ACTIVE, DECLINED and CLOSED.

    Every state change goes through ``ChatRepository.transition`` so a repeated
    button press finds the chat already moved and becomes a no-op. Notifications
    are upserted by ``(user, type, chat)`` before the matching push is sent.
    """

    def __init__(self, services: BotServices) -> None:
        self._services = services

    # -- claimant side -------------------------------------------------

    def start_check(self, ctx: Conversation, lost: Listing, found: Listing) -> Optional[Transition]:
        services = self._services
        if services.chats.find_closed_owner_check(lost.id, found.id) is not None:
            ctx.reply("You have already exchanged contacts with the finder of this item.")
            return None
        questions = [
            {"id": secret.id, "question": secret.question or FALLBACK_QUESTION}
            for secret in services.listings.secrets(found.id)
        ]
        chat = services.chats.get_or_create_owner_check(
            lost_listing_id=lost.id,
            found_listing_id=found.id,
            initiator_id=ctx.user_id,
            holder_id=found.author_id,
            claimant_id=lost.author_id,
        )
        if chat.status == ChatStatus.ACTIVE:
            ctx.reply("The finder has already confirmed you. Wait for the contact exchange.")
            return None
        LOGGER.info("Owner check chat_id=%s started with %d questions", chat.id, len(questions))
        payload = {
            "flow": FlowName.OWNER,
            "owner_check": {
                "chat_id": chat.id,
                "lost_listing_id": lost.id,
                "found_listing_id": found.id,
                "holder_id": found.author_id,
                "claimant_id": lost.author_id,
                "questions": questions,
                "answers": [],
                "index": 0,
                "lost_title": lost.title,
                "found_title": found.title,
                "submitted": False,
            },
        }
        return Transition(INTRO_STEP, payload, flow=FlowName.OWNER)

    def record_answer(self, check: Dict[str, Any], answer: str) -> Dict[str, Any]:
        """Appends the answer to the transcript and returns the updated check state."""

        index = int(check.get("index") or 0)
        questions = check.get("questions") or []
        if index >= len(questions):
            raise ValidationError("All questions have already been answered.")
        question = questions[index]
        self._services.chats.append_system_message(
            check["chat_id"],
            f"Answer to question {index + 1}: {answer}",
            {"type": "owner_answer", "question": question.get("question"), "step": index},
        )
        answers = list(check.get("answers") or [])
        answers.append({"question_id": question.get("id"), "question": question.get("question"), "answer": answer})
        return {**check, "answers": answers, "index": index + 1, "submitted": False}

    def submit_for_review(self, check: Dict[str, Any]) -> None:
        services = self._services
        chat_id = check["chat_id"]
        chat = services.chats.get(chat_id)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} does not exist")
        if chat.status != ChatStatus.PENDING:
            LOGGER.info("Skipping review submission for chat_id=%s in status %s", chat_id, chat.status)
            return

        expected = {secret.id: secret for secret in services.listings.secrets(chat.found_listing_id or "")}
        lines: List[str] = []
        for number, answer in enumerate(check.get("answers") or [], start=1):
            secret = expected.get(answer.get("question_id"))
            plain = services.vault.decrypt(secret.cipher) if secret else ""
            lines.append(f"Question {number}: {answer.get('question')}")
            lines.append(f"Answer: {answer.get('answer')}")
            lines.append(f"Expected: {plain or '(unavailable)'}")
        if not lines:
            lines.append("The listing has no secret questions, so there are no answers to compare.")
        summary = "\n".join(lines)
        services.chats.append_system_message(chat_id, summary, {"type": "owner_review"})

        title = check.get("found_title") or "your listing"
        services.notifier.upsert(
            chat.holder_id,
            NotificationType.OWNER_REVIEW,
            chat_id=chat_id,
            listing_id=chat.found_listing_id,
            title=f"Someone claims “{title}”",
            body=summary,
            status=NotificationStatus.ACTION,
            payload={
                "chatId": chat_id,
                "answers": check.get("answers") or [],
                "questions": check.get("questions") or [],
                "listingTitle": title,
            },
        )
        services.notifier.push(
            chat.holder_id,
            f"🔐 Someone says they own “{title}”. Compare the answers:\n\n{summary}",
            keyboards.owner_review(chat_id),
        )
        services.notifier.upsert(
            chat.claimant_id,
            NotificationType.OWNER_WAITING,
            chat_id=chat_id,
            listing_id=chat.found_listing_id,
            title="Waiting for the finder",
            body=f"Your answers about “{title}” were sent to the finder.",
            status=NotificationStatus.UNREAD,
            payload={"chatId": chat_id, "listingTitle": title},
        )
        LOGGER.info("Owner check chat_id=%s submitted for review", chat_id)

    # -- holder side ---------------------------------------------------

    def _load(self, chat_id: Optional[str]) -> Chat:
        chat = self._services.chats.get(chat_id or "")
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} does not exist")
        return chat

    def review(self, ctx: Conversation, value: Optional[str]) -> None:
        chat_id, _, decision = (value or "").partition("|")
        chat = self._load(chat_id)
        if chat.holder_id != ctx.user_id:
            raise AuthorizationError(f"User {ctx.user_id} is not the holder of chat {chat.id}")
        if decision not in ("confirm", "decline"):
            raise ValidationError("Unknown decision")
        if chat.status != ChatStatus.PENDING:
            ctx.notice(STATUS_NOTICES[chat.status])
            return
        if decision == "confirm":
            self._confirm(ctx, chat)
        else:
            self._decline(ctx, chat)

    def _confirm(self, ctx: Conversation, chat: Chat) -> None:
        services = self._services
        if not services.chats.transition(chat.id, (ChatStatus.PENDING,), ChatStatus.ACTIVE):
            ctx.notice(STATUS_NOTICES[self._load(chat.id).status])
            return
        LOGGER.info("Holder confirmed owner for chat_id=%s", chat.id)
        services.notifier.upsert(chat.holder_id, NotificationType.OWNER_REVIEW, chat_id=chat.id, status=NotificationStatus.RESOLVED)
        services.notifier.upsert(
            chat.holder_id,
            NotificationType.CONTACT_SHARE_REQUEST,
            chat_id=chat.id,
            listing_id=chat.found_listing_id,
            title="Exchange contacts with the owner",
            body="You confirmed the owner. Press the button to exchange phone numbers.",
            status=NotificationStatus.ACTION,
            payload={"chatId": chat.id},
        )
        ctx.notice("Owner confirmed")
        ctx.reply("✅ You confirmed the owner. Exchange contacts when you are ready.", keyboards.contact_request(chat.id))
        services.notifier.upsert(
            chat.claimant_id,
            NotificationType.OWNER_WAITING,
            chat_id=chat.id,
            title="The finder confirmed you",
            body="The finder confirmed your answers and will share contacts shortly.",
            status=NotificationStatus.UNREAD,
        )
        services.notifier.push(chat.claimant_id, "✅ The finder confirmed your answers. Contacts will be shared shortly.")

    def _decline(self, ctx: Conversation, chat: Chat) -> None:
        services = self._services
        if not services.chats.transition(chat.id, (ChatStatus.PENDING,), ChatStatus.DECLINED):
            ctx.notice(STATUS_NOTICES[self._load(chat.id).status])
            return
        LOGGER.info("Holder declined owner for chat_id=%s", chat.id)
        services.notifier.upsert(chat.holder_id, NotificationType.OWNER_REVIEW, chat_id=chat.id, status=NotificationStatus.RESOLVED)
        ctx.notice("Request declined")
        ctx.reply("The request was declined. No contacts will be shared.")
        services.notifier.upsert(chat.claimant_id, NotificationType.OWNER_WAITING, chat_id=chat.id, status=NotificationStatus.RESOLVED)
        services.notifier.upsert(
            chat.claimant_id,
            NotificationType.OWNER_DECLINED,
            chat_id=chat.id,
            title="The finder declined the request",
            body="The answers did not match. You can keep looking or publish a lost listing.",
            status=NotificationStatus.UNREAD,
        )
        services.notifier.push(chat.claimant_id, "❌ The finder did not confirm your answers. No contacts were shared.")
        self.clear_sessions(chat)

    def contact_request(self, ctx: Conversation, chat_id: Optional[str]) -> None:
        services = self._services
        chat = self._load(chat_id)
        if chat.holder_id != ctx.user_id:
            raise AuthorizationError(f"User {ctx.user_id} is not the holder of chat {chat.id}")
        if chat.status == ChatStatus.PENDING:
            ctx.notice("Confirm the owner first")
            return
        if chat.status != ChatStatus.ACTIVE:
            ctx.notice(STATUS_NOTICES[chat.status])
            return
        services.notifier.upsert(chat.holder_id, NotificationType.CONTACT_SHARE_REQUEST, chat_id=chat.id, status=NotificationStatus.RESOLVED)
        claimant = services.users.get(chat.claimant_id)
        if claimant is not None and claimant.phone:
            ctx.notice("Exchanging contacts")
            self.finalize(chat.id)
            return
        holder = services.users.get(chat.holder_id)
        masked = mask_phone(holder.phone if holder else None)
        services.notifier.upsert(
            chat.claimant_id,
            NotificationType.OWNER_APPROVED,
            chat_id=chat.id,
            listing_id=chat.found_listing_id,
            title="Share your number to get the finder's contact",
            body=f"The finder's number: {masked}. Share your own number to see it.",
            status=NotificationStatus.ACTION,
            payload={"chatId": chat.id, "maskedPhone": masked},
        )
        services.notifier.upsert(chat.claimant_id, NotificationType.OWNER_WAITING, chat_id=chat.id, status=NotificationStatus.RESOLVED)
        services.notifier.push(
            chat.claimant_id,
            f"🤝 The finder is ready to exchange contacts ({masked}). Share your number to continue.",
            keyboards.share_contact(chat.id),
        )
        ctx.notice("Request sent")
        ctx.reply("We asked the owner to share their number. You will both get the contacts afterwards.")

    def share_contact(self, ctx: Conversation, chat_id: Optional[str]) -> None:
        chat = self._load(chat_id)
        if chat.claimant_id != ctx.user_id:
            raise AuthorizationError(f"User {ctx.user_id} is not the claimant of chat {chat.id}")
        if chat.status == ChatStatus.PENDING:
            ctx.notice("The finder has not requested contacts yet")
            return
        if chat.status != ChatStatus.ACTIVE:
            ctx.notice(STATUS_NOTICES[chat.status])
            return
        requested = self._services.notifier.repository.action_chat_ids(ctx.user_id, NotificationType.OWNER_APPROVED)
        if chat.id not in requested:
            ctx.notice("The finder has not requested contacts yet")
            return
        user = ctx.user
        if user is not None and user.phone:
            ctx.notice("Sharing contacts")
            self.finalize(chat.id)
            return
        ctx.notice("Phone number needed")
        ctx.reply("Tap the button below to send your phone number.", request_phone_keyboard())

    # -- both sides ----------------------------------------------------

    def handle_contact_shared(self, ctx: Conversation) -> int:
        """Finalises every chat that was waiting for this user's phone. Returns how many closed."""

        services = self._services
        user_id = ctx.user_id
        repository = services.notifier.repository
        chat_ids = repository.action_chat_ids(user_id, NotificationType.OWNER_APPROVED)
        for chat_id in repository.action_chat_ids(user_id, NotificationType.CONTACT_SHARE_REQUEST):
            request = repository.latest_by_key(user_id, NotificationType.CONTACT_SHARE_REQUEST, chat_id)
            if request is not None and request.payload.get("awaitingPhone") and chat_id not in chat_ids:
                chat_ids.append(chat_id)
        closed = 0
        for chat_id in chat_ids:
            if self.finalize(chat_id):
                closed += 1
        return closed

    def finalize(self, chat_id: str) -> bool:
        """Moves ACTIVE to CLOSED and reveals both contacts. Needs both phones on record."""

        services = self._services
        chat = services.chats.get(chat_id)
        if chat is None or chat.status != ChatStatus.ACTIVE:
            return False
        holder = services.users.get(chat.holder_id)
        claimant = services.users.get(chat.claimant_id)
        if claimant is None or not claimant.phone:
            LOGGER.info("Chat chat_id=%s still waits for the claimant's phone", chat_id)
            return False
        if holder is None or not holder.phone:
            services.notifier.upsert(
                chat.holder_id,
                NotificationType.CONTACT_SHARE_REQUEST,
                chat_id=chat.id,
                title="Share your number",
                body="The owner shared their number. Share yours to complete the exchange.",
                status=NotificationStatus.ACTION,
                payload={"chatId": chat.id, "awaitingPhone": True},
            )
            services.notifier.push(
                chat.holder_id,
                "📱 The owner is ready. Share your phone number to complete the exchange.",
                request_phone_keyboard(),
            )
            return False
        if not services.chats.transition(chat.id, (ChatStatus.ACTIVE,), ChatStatus.CLOSED):
            return False
        LOGGER.info("Contacts exchanged for chat_id=%s", chat_id)
        services.chats.append_system_message(chat.id, "Contacts exchanged", {"type": "contact_exchange"})

        services.notifier.upsert(chat.holder_id, NotificationType.CONTACT_SHARE_REQUEST, chat_id=chat.id, status=NotificationStatus.RESOLVED)
        services.notifier.upsert(chat.claimant_id, NotificationType.OWNER_APPROVED, chat_id=chat.id, status=NotificationStatus.RESOLVED)
        services.notifier.upsert(chat.claimant_id, NotificationType.OWNER_WAITING, chat_id=chat.id, status=NotificationStatus.RESOLVED)
        services.notifier.upsert(
            chat.holder_id,
            NotificationType.CONTACT_AVAILABLE,
            chat_id=chat.id,
            title="Owner's contact",
            body=f"Owner's phone: {claimant.phone}",
            status=NotificationStatus.UNREAD,
            payload={"chatId": chat.id, "phone": claimant.phone},
        )
        services.notifier.upsert(
            chat.claimant_id,
            NotificationType.CONTACT_AVAILABLE,
            chat_id=chat.id,
            title="Finder's contact",
            body=f"Finder's phone: {holder.phone}",
            status=NotificationStatus.UNREAD,
            payload={"chatId": chat.id, "phone": holder.phone},
        )
        services.notifier.push(chat.holder_id, f"🤝 Contacts exchanged. Owner's phone: {claimant.phone}")
        services.notifier.push(chat.claimant_id, f"🤝 Contacts exchanged. Finder's phone: {holder.phone}")
        self.clear_sessions(chat)
        return True

    def clear_sessions(self, chat: Chat) -> None:
        """Deletes owner-check sessions of either party that point at this chat."""

        sessions = self._services.sessions
        for user_id in (chat.claimant_id, chat.holder_id):
            session = sessions.get(user_id)
            if session is None or session.flow != FlowName.OWNER:
                continue
            if (session.payload.get("owner_check") or {}).get("chat_id") == chat.id:
                sessions.delete(user_id)
