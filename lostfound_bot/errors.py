"""Error categories raised by repositories, services and step handlers."""

from __future__ import annotations


class LostFoundError(Exception):
    """Base class for every error the bot knows how to report."""


class ValidationError(LostFoundError):
    """Malformed or missing user input; the current step is re-prompted."""


class NotFoundError(LostFoundError):
    """A referenced listing or chat no longer exists."""


class AuthorizationError(LostFoundError):
    """The actor lacks the chat role required for an action."""


class EncryptionError(LostFoundError):
    """A secret could not be encrypted, decrypted or keyed."""


class TransportError(LostFoundError):
    """Outbound delivery to the messaging platform failed."""


class PersistenceError(LostFoundError):
    """A store read or write failed."""


class StaleSessionError(PersistenceError):
    """The session changed between load and save."""

    def __init__(self, user_id: str, expected_version: int) -> None:
        super().__init__(f"Session for user {user_id} is no longer at version {expected_version}")
        self.user_id = user_id
        self.expected_version = expected_version
