"""
Webhook Security

Origin allow-list, signature validation and the authentication gate.
"""

from wa_integration.security.gate import AuthDecision, WebhookAuthGate, mask_secret
from wa_integration.security.origin import OriginAllowList, resolve_client_address
from wa_integration.security.signature import compute_signature, validate_signature

__all__ = [
    "AuthDecision",
    "WebhookAuthGate",
    "mask_secret",
    "OriginAllowList",
    "resolve_client_address",
    "compute_signature",
    "validate_signature",
]
