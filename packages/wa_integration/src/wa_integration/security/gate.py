"""
Webhook Authentication Gate

Decides whether an inbound gateway callback may be processed.

Rule: origin AND (per-account secret OR shared secret OR body signature).
The origin check is never bypassed by a valid credential.
"""

import hmac
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from wacore.settings import Settings

from wa_integration.errors import Unauthorized
from wa_integration.security.origin import OriginAllowList, resolve_client_address
from wa_integration.security.signature import extract_signature, validate_signature

logger = logging.getLogger(__name__)

SHARED_SECRET_HEADER = "x-webhook-secret"
MASK_VISIBLE_CHARS = 4

# Looks up the decrypted secret of an account by its key (None if unknown)
SecretLookup = Callable[[str], str | None]


def mask_secret(value: str | None) -> str:
    """Fixed-length preview of a secret for logs."""
    if not value:
        return "<none>"
    # Short secrets would be revealed whole by the prefix
    if len(value) <= 2 * MASK_VISIBLE_CHARS:
        return "****"
    return value[:MASK_VISIBLE_CHARS] + "****"


def _secrets_equal(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


@dataclass
class AuthDecision:
    """Outcome of the gate for one request."""

    authorized: bool
    client_address: str | None
    account_key: str | None
    checks: list[str] = field(default_factory=list)
    passed_check: str | None = None
    reason: str | None = None


class WebhookAuthGate:
    """
    Layered trust checks for gateway webhooks.

    Checks run in order and each attempted check is recorded:
    1. origin: client address against the allow-list (mandatory)
    2. account_secret: body apikey against the named account's stored secret
    3. shared_secret: body apikey or X-Webhook-Secret against the operator secret
    4. signature: HMAC-SHA256 of the raw body against a signature header
    """

    def __init__(
        self,
        allow_list: OriginAllowList,
        shared_secret: str | None = None,
        signing_secret: str | None = None,
        secret_lookup: SecretLookup | None = None,
    ):
        self.allow_list = allow_list
        self.shared_secret = shared_secret
        self.signing_secret = signing_secret
        self.secret_lookup = secret_lookup

    @classmethod
    def from_settings(cls, settings: Settings, secret_lookup: SecretLookup | None = None) -> "WebhookAuthGate":
        return cls(
            allow_list=OriginAllowList(settings.allowed_origins),
            shared_secret=settings.webhook_shared_secret,
            signing_secret=settings.WEBHOOK_SIGNING_SECRET,
            secret_lookup=secret_lookup,
        )

    def authorize(
        self,
        headers: Mapping[str, str],
        body: bytes,
        payload: dict[str, Any],
        peer: str | None,
        account_key: str | None = None,
    ) -> AuthDecision:
        """
        Evaluate a webhook request.

        Args:
            headers: Request headers
            body: Raw request body (for signature checks)
            payload: Parsed JSON body
            peer: Socket peer address
            account_key: Account named by the route, used when the body names none

        Returns:
            AuthDecision describing the outcome and the checks attempted
        """
        address = resolve_client_address(headers, peer)
        instance = payload.get("instance")
        account_key = instance if isinstance(instance, str) and instance else account_key
        decision = AuthDecision(
            authorized=False,
            client_address=str(address) if address else None,
            account_key=account_key,
        )
        provided_key = payload.get("apikey") if isinstance(payload.get("apikey"), str) else None
        lowered = {key.lower(): value for key, value in headers.items()}

        decision.checks.append("origin")
        if not self.allow_list.allows(address):
            decision.reason = "origin not allowed"
            self._log_rejection(decision, provided_key)
            return decision

        if account_key and provided_key and self.secret_lookup:
            decision.checks.append("account_secret")
            if _secrets_equal(provided_key, self.secret_lookup(account_key)):
                return self._accept(decision, "account_secret")

        if self.shared_secret:
            decision.checks.append("shared_secret")
            candidates = (provided_key, lowered.get(SHARED_SECRET_HEADER))
            if any(_secrets_equal(candidate, self.shared_secret) for candidate in candidates):
                return self._accept(decision, "shared_secret")

        signature = extract_signature(headers)
        if signature and self.signing_secret:
            decision.checks.append("signature")
            if validate_signature(body, signature, self.signing_secret):
                return self._accept(decision, "signature")

        decision.reason = "no valid credential"
        self._log_rejection(decision, provided_key)
        return decision

    def require(self, *args: Any, **kwargs: Any) -> AuthDecision:
        """Like `authorize`, but raise Unauthorized on rejection."""
        decision = self.authorize(*args, **kwargs)
        if not decision.authorized:
            raise Unauthorized(decision.reason or "unauthorized", decision.checks)
        return decision

    def _accept(self, decision: AuthDecision, check: str) -> AuthDecision:
        decision.authorized = True
        decision.passed_check = check
        logger.debug(
            f"Webhook authorized for {decision.account_key} via {check}",
            extra={"client_address": decision.client_address, "checks": decision.checks},
        )
        return decision

    def _log_rejection(self, decision: AuthDecision, provided_key: str | None) -> None:
        logger.warning(
            f"Webhook rejected for {decision.account_key or '<unknown>'}: {decision.reason}",
            extra={
                "account_key": decision.account_key,
                "client_address": decision.client_address,
                "checks": decision.checks,
                "apikey": mask_secret(provided_key),
            },
        )
