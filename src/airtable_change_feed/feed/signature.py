"""HMAC verification of Airtable notification bodies."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-Airtable-Content-MAC"
_PREFIX = "hmac-sha256="


def compute_notification_signature(secret_base64: str, body: bytes) -> str:
    key = base64.b64decode(secret_base64)
    digest = hmac.new(key, body, hashlib.sha256).hexdigest()
    return f"{_PREFIX}{digest}"


def verify_notification_signature(
    secret_base64: Optional[str], body: bytes, header_value: Optional[str]
) -> bool:
    """Return True when ``header_value`` matches the MAC of ``body``.

    Airtable signs the raw request body with the base64-decoded
    ``macSecretBase64`` returned at webhook creation.
    """
    if not secret_base64 or not header_value:
        return False
    try:
        expected = compute_notification_signature(secret_base64, body)
    except (binascii.Error, ValueError):
        return False
    return hmac.compare_digest(expected, header_value.strip())
