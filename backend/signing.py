"""
HMAC-SHA256 signing for webhook payloads, plus secret and delivery id helpers.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string
import time

SIGNATURE_PREFIX = "sha256="

_BASE36 = string.digits + string.ascii_lowercase


def generate_secret() -> str:
    """32 random bytes, hex encoded. Shown to the user exactly once."""
    return secrets.token_hex(32)


def generate_endpoint_key() -> str:
    return secrets.token_urlsafe(24)


def generate_delivery_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"del_{int(time.time() * 1000)}_{suffix}"


def sign_payload(payload: str | bytes, secret: str) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: str | bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check; the ``sha256=`` prefix on ``signature`` is optional."""
    if not signature or not secret:
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        signature = f"{SIGNATURE_PREFIX}{signature}"
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(signature.strip().lower(), expected)
