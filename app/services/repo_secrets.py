"""Repository secrets: webhook secret generation and at-rest encryption."""

from __future__ import annotations

import os
import secrets

from cryptography.fernet import Fernet, InvalidToken

_SEALED_PREFIX = "enc:"
WEBHOOK_SECRET_BYTES = 16


def _cipher() -> Fernet:
    key = os.getenv("SETTINGS_ENCRYPTION_KEY")
    if not key:
        raise RuntimeError("SETTINGS_ENCRYPTION_KEY is not configured")
    try:
        return Fernet(key.encode())
    except ValueError as exc:
        raise RuntimeError("SETTINGS_ENCRYPTION_KEY is not a valid Fernet key") from exc


def generate_webhook_secret() -> str:
    """Random hex secret, generated once when a repository is first configured."""
    return secrets.token_hex(WEBHOOK_SECRET_BYTES)


def seal(plaintext: str) -> str:
    return _SEALED_PREFIX + _cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def unseal(stored: str | None) -> str | None:
    """Decrypt a sealed value. Legacy plaintext values are returned as-is."""
    if not stored:
        return None
    if not stored.startswith(_SEALED_PREFIX):
        return stored
    try:
        return _cipher().decrypt(stored[len(_SEALED_PREFIX) :].encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise RuntimeError("Stored secret could not be decrypted with the configured key") from exc
