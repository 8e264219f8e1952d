"""Encryption of verification answers at rest."""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import EncryptionError

LOGGER = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
PLAIN = "plain"
NONCE_SIZE = 12
TAG_SIZE = 16
MAX_SECRETS = 3

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def resolve_key(source: Optional[str]) -> Optional[bytes]:
    """Decodes a 32-byte key given as hex, raw text or base64.

    ``None`` or blank input selects plaintext mode. Anything else that does not
    yield exactly 32 bytes raises :class:`EncryptionError`.
    """

    if source is None or not source.strip():
        return None
    trimmed = source.strip()
    if _HEX_KEY.match(trimmed):
        return bytes.fromhex(trimmed)
    raw = trimmed.encode("utf-8")
    if len(raw) == 32:
        return raw
    try:
        decoded = base64.b64decode(trimmed, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == 32:
        return decoded
    raise EncryptionError("SECRETS_KEY must be a 32-byte key in hex, base64 or raw form")


class SecretVault:
    def __init__(self, key: Optional[bytes]) -> None:
        if key is not None and len(key) != 32:
            raise EncryptionError("Secret key must be exactly 32 bytes")
        self._aead = AESGCM(key) if key else None
        if self._aead is None:
            LOGGER.warning("SECRETS_KEY is not set; verification answers are stored without encryption")

    @classmethod
    def from_setting(cls, source: Optional[str]) -> "SecretVault":
        return cls(resolve_key(source))

    @property
    def enabled(self) -> bool:
        return self._aead is not None

    def encrypt(self, value: str) -> Dict[str, Any]:
        if self._aead is None:
            return {"type": PLAIN, "value": value}
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, value.encode("utf-8"), None)
        data, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return {
            "type": ALGORITHM,
            "iv": base64.b64encode(nonce).decode("ascii"),
            "tag": base64.b64encode(tag).decode("ascii"),
            "data": base64.b64encode(data).decode("ascii"),
        }

    def decrypt(self, payload: Any) -> str:
        """Returns the plaintext, or an empty string when the payload cannot be opened."""

        if not isinstance(payload, dict):
            return ""
        kind = payload.get("type")
        if kind == PLAIN:
            value = payload.get("value")
            return value if isinstance(value, str) else ""
        if kind != ALGORITHM:
            LOGGER.error("Unknown secret payload type %r", kind)
            return ""
        if self._aead is None:
            LOGGER.error("Encrypted secret found but no SECRETS_KEY is configured")
            return ""
        try:
            nonce = base64.b64decode(payload["iv"], validate=True)
            tag = base64.b64decode(payload["tag"], validate=True)
            data = base64.b64decode(payload["data"], validate=True)
            return self._aead.decrypt(nonce, data + tag, None).decode("utf-8")
        except (KeyError, TypeError, ValueError, binascii.Error, InvalidTag):
            LOGGER.error("Failed to decrypt a stored secret")
            return ""

    def encrypt_entries(self, entries: Iterable[Any]) -> List[Dict[str, Any]]:
        """Encrypts up to three ``{question, answer}`` entries, dropping ones without an answer."""

        sealed: List[Dict[str, Any]] = []
        for entry in entries:
            if len(sealed) >= MAX_SECRETS:
                break
            if isinstance(entry, str):
                question, answer = "", entry.strip()
            elif isinstance(entry, dict):
                question = str(entry.get("question") or "").strip()
                answer = str(entry.get("answer") or "").strip()
            else:
                continue
            if not answer:
                continue
            sealed.append({"question": question, "cipher": self.encrypt(answer)})
        return sealed
