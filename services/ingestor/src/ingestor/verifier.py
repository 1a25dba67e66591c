"""Request authentication for inbound webhooks.

Signatures use the ``sha256=<hex>`` header format: an HMAC-SHA256 of the raw
request body, keyed by the per-source shared secret. Every check returns a
boolean and never raises, so callers can reject with a single 401 path.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

SIGNATURE_PREFIX = "sha256"
BEARER_SCHEME = "Bearer"


def _to_bytes(value: bytes | str) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def create_digest(body: bytes | str, secret: str) -> str:
    return hmac.new(_to_bytes(secret), _to_bytes(body), hashlib.sha256).hexdigest()


def create_signature(body: bytes | str, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}={create_digest(body, secret)}"


def verify_signature(raw_body: bytes | str, signature_header: str | None, secret: str) -> bool:
    if not signature_header or not secret:
        return False

    parts = signature_header.strip().split("=")
    if len(parts) != 2 or parts[0] != SIGNATURE_PREFIX:
        return False

    received = parts[1].lower()
    try:
        bytes.fromhex(received)
    except ValueError:
        return False

    expected = create_digest(raw_body, secret)
    return hmac.compare_digest(received.encode("ascii"), expected.encode("ascii"))


def verify_bearer_token(auth_header: str | None, expected: str) -> bool:
    if not auth_header or not expected:
        return False

    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != BEARER_SCHEME or not parts[1]:
        return False

    return hmac.compare_digest(_to_bytes(parts[1]), _to_bytes(expected))


def generate_secret() -> str:
    """Return a new 256-bit secret, hex-encoded, for provisioning a webhook source."""
    return secrets.token_hex(32)
