"""Building blocks of the conversation engine: transitions, steps, flows and the reply context."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from ..errors import NotFoundError, TransportError
from ..models import InboundEvent, Keyboard, Session, UserContact
from .keyboards import CallbackAction

if TYPE_CHECKING:
    from .bot_services import BotServices

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """Next state requested by a step.

    ``step=None`` ends the conversation: the session row is retired under its
    version guard and only then is the payload handed to the flow's ``on_finish``.
    ``flow=None`` keeps the current flow. With ``render=False`` the state is
    persisted but the target step's ``enter`` is not called.
    """

    step: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    flow: Optional[str] = None
    render: bool = True

    @classmethod
    def finish(cls) -> "Transition":
        return cls(step=None)


def evolve(payload: Dict[str, Any], mutate: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
    """Returns a mutated deep copy; the original payload is never touched."""

    clone = copy.deepcopy(payload or {})
    mutate(clone)
    return clone


class Step:
    """A single conversation step. Subclasses override the hooks they need."""

    id: str = ""

    def prepare(self, ctx: "Conversation", payload: Dict[str, Any]) -> Optional[Transition]:
        """Runs before the step is persisted.

        Returning a transition to another step redirects there; returning one to
        this same step replaces the payload that is about to be stored.
        """

        return None

    def rewind(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Payload used when the user navigates back onto this step."""

        return payload

    def enter(self, ctx: "Conversation", session: Session) -> Optional[Transition]:
        return None

    def on_message(self, ctx: "Conversation", session: Session, event: InboundEvent) -> Optional[Transition]:
        ctx.reply("Please use the buttons above, or send /cancel to start over.")
        return None

    def on_callback(self, ctx: "Conversation", session: Session, action: CallbackAction) -> Optional[Transition]:
        ctx.notice("This action is not available here")
        return None


@dataclass(frozen=True)
class Flow:
    name: str
    steps: Tuple[Step, ...]
    back_targets: Dict[str, str] = field(default_factory=dict)
    initial_payload: Callable[[], Dict[str, Any]] = dict
    startable: bool = True
    on_finish: Optional[Callable[["Conversation", Dict[str, Any]], None]] = None

    @property
    def order(self) -> List[str]:
        return [step.id for step in self.steps]

    def first_step_id(self) -> str:
        return self.steps[0].id

    def has(self, step_id: str) -> bool:
        return step_id in self.order

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise NotFoundError(f"Step '{step_id}' is not part of flow '{self.name}'")

    def previous(self, step_id: str) -> Optional[str]:
        if step_id in self.back_targets:
            return self.back_targets[step_id]
        order = self.order
        try:
            index = order.index(step_id)
        except ValueError:
            return None
        if index <= 0:
            return None
        return order[index - 1]


class FlowRegistry:
    def __init__(self, flows: Optional[List[Flow]] = None) -> None:
        self._flows: Dict[str, Flow] = {}
        for flow in flows or []:
            self.register(flow)

    def register(self, flow: Flow) -> None:
        if flow.name in self._flows:
            raise ValueError(f"Flow '{flow.name}' is already registered")
        if not flow.steps:
            raise ValueError(f"Flow '{flow.name}' has no steps")
        self._flows[flow.name] = flow

    def has(self, name: Optional[str]) -> bool:
        return bool(name) and name in self._flows

    def get(self, name: Optional[str]) -> Flow:
        if not name or name not in self._flows:
            raise NotFoundError(f"Flow '{name}' is not defined")
        return self._flows[name]

    def step(self, flow_name: Optional[str], step_id: str) -> Step:
        return self.get(flow_name).step(step_id)


class Conversation:
    """Per-event context handed to steps: who is talking and how to answer."""

    def __init__(
        self,
        max_id: str,
        services: "BotServices",
        *,
        callback_id: Optional[str] = None,
    ) -> None:
        self.max_id = str(max_id)
        self.services = services
        self.callback_id = callback_id
        self.user: Optional[UserContact] = None
        self.sent: List[Tuple[str, Optional[Keyboard]]] = []
        self.notices: List[str] = []
        self._answered = False
        self._pending: List[Tuple[str, Optional[Keyboard]]] = []

    @property
    def is_callback(self) -> bool:
        return self.callback_id is not None

    @property
    def user_id(self) -> str:
        if self.user is None:
            raise RuntimeError("Conversation user is not resolved yet")
        return self.user.id

    def reply(self, text: str, buttons: Optional[Keyboard] = None) -> None:
        self.sent.append((text, buttons))
        try:
            self.services.client.send_message(self.max_id, text, buttons)
        except TransportError:
            LOGGER.error("Reply to max_id=%s was not delivered", self.max_id)

    def reply_after_save(self, text: str, buttons: Optional[Keyboard] = None) -> None:
        """Queues a reply that is sent only once the next state is persisted."""

        self._pending.append((text, buttons))

    def flush(self) -> None:
        pending, self._pending = self._pending, []
        for text, buttons in pending:
            self.reply(text, buttons)

    def notice(self, text: str) -> None:
        """Short acknowledgement of a button press; falls back to a reply for messages."""

        if not self.is_callback:
            self.reply(text)
            return
        self.notices.append(text)
        if self._answered:
            LOGGER.debug("Callback %s already answered; dropping notice %r", self.callback_id, text)
            return
        self._answered = True
        try:
            self.services.client.answer_callback(self.callback_id, text)
        except TransportError:
            LOGGER.error("Callback answer %s was not delivered", self.callback_id)

    def fail(self, text: str) -> None:
        if self.is_callback and not self._answered:
            self.notice(text)
        else:
            self.reply(text)
