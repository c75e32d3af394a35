"""Security helpers for pairing codes and the relay service key."""

from __future__ import annotations

import hmac
import secrets


PAIRING_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PAIRING_CODE_LENGTH = 6
TOKEN_BYTES = 24
SERVICE_KEY_HEADER = "X-Relay-Key"


def generate_pairing_code() -> str:
    """Generate a short code without look-alike characters (no 0/O, 1/I)."""
    return "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))


def normalize_pairing_code(code: str) -> str:
    return code.strip().upper()


def generate_token() -> str:
    """Generate a URL-safe token, e.g. for agent instance references."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def verify_service_key(provided: str | None, expected: str | None) -> bool:
    """Check a presented service key; an unset expected key disables the check."""
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
