"""
Webhook body signatures (HMAC-SHA256 of the raw body).
"""

import hashlib
import hmac
from collections.abc import Mapping

SIGNATURE_HEADERS = (
    "x-hub-signature-256",
    "x-signature",
    "x-webhook-signature",
    "x-evolution-signature",
)


def extract_signature(headers: Mapping[str, str]) -> str | None:
    """Return the first signature header present, if any."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for header in SIGNATURE_HEADERS:
        if lowered.get(header):
            return lowered[header].strip()
    return None


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a payload."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def validate_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Validate a webhook signature.

    Args:
        payload: Raw request body bytes
        signature: Header value, with or without a "sha256=" prefix
        secret: Signing secret

    Returns:
        True if signature is valid
    """
    if not signature or not secret:
        return False

    if signature.lower().startswith("sha256="):
        signature = signature[7:]

    computed = compute_signature(payload, secret)
    return hmac.compare_digest(computed.encode(), signature.strip().lower().encode())
