"""Explicit bundle of collaborators shared by the runtime and the step handlers."""

from __future__ import annotations

from dataclasses import dataclass

from ..config import Settings
from ..repositories.chat_repository import ChatRepository
from ..repositories.listing_repository import ListingRepository
from ..repositories.session_repository import SessionRepository
from ..repositories.user_repository import UserRepository
from .max_client import MaxClient
from .notifier import Notifier
from .secret_vault import SecretVault


@dataclass(frozen=True)
class BotServices:
    settings: Settings
    client: MaxClient
    sessions: SessionRepository
    users: UserRepository
    listings: ListingRepository
    chats: ChatRepository
    notifier: Notifier
    vault: SecretVault
