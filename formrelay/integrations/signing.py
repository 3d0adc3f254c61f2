"""
Webhook signatures.

Outbound deliveries carry `X-Signature: sha256=<hex>` where the hex
digest is HMAC-SHA256 of the exact request body keyed by the config's
secret. Receivers verify with `verify_signature`.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """Return the hex HMAC-SHA256 digest of body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sign(secret: str, body: bytes) -> str:
    """Return the X-Signature header value for body."""
    return SIGNATURE_PREFIX + compute_signature(secret, body)


def verify_signature(secret: str, body: bytes, header: str | None) -> bool:
    """Check an X-Signature header in constant time."""
    if not header or not header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected, header[len(SIGNATURE_PREFIX):].lower())
