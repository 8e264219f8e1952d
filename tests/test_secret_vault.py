import base64

import pytest

from lostfound_bot.errors import EncryptionError
from lostfound_bot.services.secret_vault import ALGORITHM, PLAIN, SecretVault, resolve_key

from conftest import TEST_KEY


@pytest.mark.parametrize("value", ["red", "a rubber duck", "IMEI ends with 4821", "ключи от дома"])
def test_decrypt_returns_what_was_encrypted(vault, value):
    sealed = vault.encrypt(value)

    assert sealed["type"] == ALGORITHM
    assert value not in str(sealed)
    assert vault.decrypt(sealed) == value


def test_each_encryption_uses_a_fresh_nonce(vault):
    first = vault.encrypt("same answer")
    second = vault.encrypt("same answer")

    assert first["iv"] != second["iv"]
    assert first["data"] != second["data"]


@pytest.mark.parametrize(
    "payload",
    [
        None,
        "not a dict",
        {},
        {"type": "rot13", "value": "x"},
        {"type": ALGORITHM},
        {"type": ALGORITHM, "iv": "***", "tag": "***", "data": "***"},
    ],
)
def test_malformed_payload_decrypts_to_empty_string(vault, payload):
    assert vault.decrypt(payload) == ""


def test_tampered_ciphertext_fails_closed(vault):
    sealed = vault.encrypt("secret answer")
    data = bytearray(base64.b64decode(sealed["data"]))
    data[0] ^= 0xFF
    sealed["data"] = base64.b64encode(bytes(data)).decode("ascii")

    assert vault.decrypt(sealed) == ""


def test_other_key_cannot_open_payload(vault):
    sealed = vault.encrypt("secret answer")
    other = SecretVault(bytes(32))

    assert other.decrypt(sealed) == ""


def test_plaintext_mode_without_key():
    vault = SecretVault(None)

    sealed = vault.encrypt("blue")

    assert not vault.enabled
    assert sealed == {"type": PLAIN, "value": "blue"}
    assert vault.decrypt(sealed) == "blue"


def test_encrypted_payload_needs_key_to_open(vault):
    sealed = vault.encrypt("blue")

    assert SecretVault(None).decrypt(sealed) == ""


def test_encrypt_entries_keeps_three_answered_entries(vault):
    entries = [
        {"question": "Zipper colour?", "answer": "red"},
        {"question": "No answer", "answer": "  "},
        "just an answer",
        {"question": "Keychain?", "answer": "duck"},
        {"question": "Fourth?", "answer": "dropped"},
    ]

    sealed = vault.encrypt_entries(entries)

    assert [item["question"] for item in sealed] == ["Zipper colour?", "", "Keychain?"]
    assert [vault.decrypt(item["cipher"]) for item in sealed] == ["red", "just an answer", "duck"]


def test_resolve_key_accepts_hex_base64_and_raw():
    assert resolve_key(TEST_KEY.hex()) == TEST_KEY
    assert resolve_key(base64.b64encode(TEST_KEY).decode("ascii")) == TEST_KEY
    assert resolve_key("k" * 32) == b"k" * 32
    assert resolve_key(None) is None
    assert resolve_key("   ") is None


def test_resolve_key_rejects_wrong_length():
    with pytest.raises(EncryptionError):
        resolve_key("too-short")


def test_vault_rejects_wrong_key_size():
    with pytest.raises(EncryptionError):
        SecretVault(b"short")
