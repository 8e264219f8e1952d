from __future__ import annotations

from typing import Any, Callable, List, Optional
from unittest.mock import MagicMock

import pytest

from lostfound_bot.config import Settings
from lostfound_bot.database import Database
from lostfound_bot.flows.registry import build_registry
from lostfound_bot.models import InboundEvent, NewListing
from lostfound_bot.repositories.chat_repository import ChatRepository
from lostfound_bot.repositories.listing_repository import ListingRepository
from lostfound_bot.repositories.notification_repository import NotificationRepository
from lostfound_bot.repositories.session_repository import SessionRepository
from lostfound_bot.repositories.user_repository import UserRepository
from lostfound_bot.services.bot_services import BotServices
from lostfound_bot.services.flow_engine import Conversation
from lostfound_bot.services.flow_runtime import FlowRuntime
from lostfound_bot.services.listing_publisher import ListingPublisher
from lostfound_bot.services.max_client import MaxClient
from lostfound_bot.services.notifier import Notifier
from lostfound_bot.services.owner_verification import OwnerVerification
from lostfound_bot.services.secret_vault import SecretVault

TEST_KEY = bytes(range(32))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        max_bot_token="test-token",
        max_api_base="https://max.test",
        database_path=tmp_path / "bot.sqlite3",
        secrets_key=TEST_KEY.hex(),
        front_origin="https://map.test",
        donation_url=None,
        session_ttl_minutes=0,
        match_min_score=50,
        match_radius_km=5.0,
        match_suggestions=3,
        http_timeout_seconds=5,
    )


@pytest.fixture
def database(settings) -> Database:
    db = Database(settings.database_path)
    db.initialise()
    return db


@pytest.fixture
def client() -> MagicMock:
    return MagicMock(spec=MaxClient)


@pytest.fixture
def vault() -> SecretVault:
    return SecretVault(TEST_KEY)


@pytest.fixture
def services(settings, database, client, vault) -> BotServices:
    users = UserRepository(database)
    return BotServices(
        settings=settings,
        client=client,
        sessions=SessionRepository(database),
        users=users,
        listings=ListingRepository(database),
        chats=ChatRepository(database),
        notifier=Notifier(NotificationRepository(database), users, client),
        vault=vault,
    )


@pytest.fixture
def verification(services) -> OwnerVerification:
    return OwnerVerification(services)


@pytest.fixture
def runtime(services, verification) -> FlowRuntime:
    return FlowRuntime(services, build_registry(verification, ListingPublisher(services)), verification)


@pytest.fixture
def send(runtime) -> Callable[..., Conversation]:
    def _send(max_id: str, text: str = "", **fields: Any) -> Conversation:
        return runtime.handle(InboundEvent(kind=InboundEvent.MESSAGE, max_user_id=max_id, text=text, **fields))

    return _send


@pytest.fixture
def press(runtime) -> Callable[[str, str], Conversation]:
    counter = {"value": 0}

    def _press(max_id: str, payload: str) -> Conversation:
        counter["value"] += 1
        return runtime.handle(
            InboundEvent(
                kind=InboundEvent.CALLBACK,
                max_user_id=max_id,
                callback_id=f"cb-{counter['value']}",
                callback_payload=payload,
            )
        )

    return _press


@pytest.fixture
def make_listing(services) -> Callable[..., Any]:
    def _make(
        author_id: str,
        listing_type: str,
        title: str,
        *,
        category: str = "wear",
        lat: Optional[float] = 55.7512,
        lng: Optional[float] = 37.6184,
        secrets: Optional[List[dict]] = None,
    ):
        return services.listings.create(
            author_id,
            NewListing(
                type=listing_type,
                category=category,
                title=title,
                description="",
                lat=lat,
                lng=lng,
                occurred_at="2026-10-18T10:00:00+00:00",
                secrets=services.vault.encrypt_entries(secrets or []),
            ),
        )

    return _make


def pushed_texts(client: MagicMock, max_id: str) -> List[str]:
    return [call.args[1] for call in client.send_message.call_args_list if call.args[0] == max_id]


def replies(ctx: Conversation) -> str:
    return "\n".join(text for text, _ in ctx.sent)


def callback_payloads(ctx: Conversation) -> List[str]:
    return [
        button.payload
        for _, keyboard in ctx.sent
        for row in keyboard or []
        for button in row
        if button.payload
    ]
