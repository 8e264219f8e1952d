"""Claimant-side steps of the ownership check."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..errors import ValidationError
from ..models import Button, FlowName, InboundEvent, Keyboard, Session
from ..services import keyboards
from ..services.flow_engine import Conversation, Step, Transition, evolve
from ..services.owner_verification import INTRO_STEP, QUESTION_STEP, WAITING_STEP, OwnerVerification


def _check(payload: Dict[str, Any]) -> Dict[str, Any]:
    return payload.get("owner_check") or {}


def _cancel_only() -> Keyboard:
    return [[Button.callback("✖️ Cancel", keyboards.payload(FlowName.OWNER, "cancel"))]]


class OwnerIntroStep(Step):
    id = INTRO_STEP

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        check = _check(session.payload)
        questions = check.get("questions") or []
        if not questions:
            ctx.reply("The finder did not add secret questions. Your request goes straight to the finder.")
            return Transition(WAITING_STEP, session.payload)
        ctx.reply(
            f"To confirm that “{check.get('found_title')}” is yours, answer {len(questions)} "
            "question(s) from the finder. Answers go to the finder only."
        )
        return Transition(QUESTION_STEP, session.payload)


class OwnerQuestionStep(Step):
    id = QUESTION_STEP

    def __init__(self, verification: OwnerVerification) -> None:
        self._verification = verification

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        check = _check(session.payload)
        questions = check.get("questions") or []
        index = int(check.get("index") or 0)
        if index >= len(questions):
            return Transition(WAITING_STEP, session.payload)
        ctx.reply(
            f"Question {index + 1} of {len(questions)}:\n{questions[index].get('question')}",
            _cancel_only(),
        )
        return None

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        answer = event.text.strip()
        if not answer:
            raise ValidationError("Please answer the question with text.")
        check = self._verification.record_answer(_check(session.payload), answer)
        payload = evolve(session.payload, lambda clone: clone.update(owner_check=check))
        if check["index"] >= len(check.get("questions") or []):
            return Transition(WAITING_STEP, payload)
        return Transition(QUESTION_STEP, payload)


class OwnerWaitingStep(Step):
    id = WAITING_STEP

    def __init__(self, verification: OwnerVerification) -> None:
        self._verification = verification

    def enter(self, ctx: Conversation, session: Session) -> Optional[Transition]:
        check = _check(session.payload)
        if check.get("submitted"):
            ctx.reply("Your answers are with the finder. We will notify you about the decision.")
            return None
        marked = evolve(session.payload, lambda clone: clone["owner_check"].update(submitted=True))
        ctx.services.sessions.save(session, step=self.id, flow=session.flow, payload=marked)
        self._verification.submit_for_review(check)
        ctx.reply("✅ Answers sent to the finder. We will notify you about the decision.")
        return None

    def on_message(self, ctx: Conversation, session: Session, event: InboundEvent) -> Optional[Transition]:
        if not _check(session.payload).get("submitted"):
            return Transition(self.id, session.payload)
        ctx.reply("Still waiting for the finder's decision. Send /cancel to leave this check.")
        return None
