"""
Integration Errors

Domain error taxonomy shared by the gateway client, reconciler, webhook gate,
dispatch queue and auto-response engine.
"""

from typing import Any
from uuid import UUID


class IntegrationError(Exception):
    """Base class for integration core errors."""


class GatewayError(IntegrationError):
    """Error returned by (or while reaching) the messaging gateway."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable
        self.status_code = status_code

    @property
    def is_auth_or_missing(self) -> bool:
        """Gateway rejected the credential or does not know the account."""
        return self.status_code in (401, 403, 404)


class GatewayUnavailable(GatewayError):
    """Gateway unreachable, or the account no longer exists there."""


class AccountNotFound(IntegrationError):
    """No local account matches the given id or key."""

    def __init__(self, account: UUID | str):
        super().__init__(f"Account not found: {account}")
        self.account = account


class InvalidAccountState(IntegrationError):
    """Operation not allowed in the account's current connection state."""


class MissingCredential(IntegrationError):
    """Account lacks a usable gateway secret. Fatal for the job, never retried."""

    def __init__(self, account_id: UUID | str, reason: str = "missing"):
        super().__init__(f"Account {account_id} has no usable credential ({reason})")
        self.account_id = account_id
        self.reason = reason


class Unauthorized(IntegrationError):
    """Inbound webhook could not be attributed to the gateway deployment."""

    def __init__(self, reason: str, checks: list[str] | None = None):
        super().__init__(reason)
        self.reason = reason
        self.checks = checks or []


class QuotaExceeded(IntegrationError):
    """Auto-response declined because a usage quota is exhausted."""

    def __init__(self, quota: str, used: int, limit: int):
        super().__init__(f"Quota '{quota}' exhausted ({used}/{limit})")
        self.quota = quota
        self.used = used
        self.limit = limit


class DispatchUnavailable(IntegrationError):
    """Dispatch queue could not accept a job. The recorded messages are marked failed."""

    def __init__(self, message: str, message_ids: list[UUID] | None = None):
        super().__init__(message)
        self.message_ids = message_ids or []


class DispatchFailure(IntegrationError):
    """Failed attempt to hand a dispatch job to the gateway."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class TransientDispatchFailure(DispatchFailure):
    """Network, timeout or gateway-side failure. Retried with backoff."""


class PermanentDispatchFailure(DispatchFailure):
    """Failure that will not succeed on retry. Dead-lettered immediately."""


def classify_gateway_error(error: GatewayError) -> DispatchFailure:
    """Map a gateway error onto the dispatch retry taxonomy."""
    code = error.code or (str(error.status_code) if error.status_code else None)
    if error.retryable:
        return TransientDispatchFailure(str(error), code=code)
    return PermanentDispatchFailure(str(error), code=code)


class CompletionError(IntegrationError):
    """Language-model provider call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
