"""
Gateway Base

Abstract interface for the external messaging gateway and the data it returns.
Implementations: Evolution API (production), Stub (development and tests).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

JID_SUFFIXES = ("@s.whatsapp.net", "@c.us", "@g.us", "@lid")


class ConnectionState(str, Enum):
    """Local connection state of an account."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


# Gateway-reported states. Anything not listed is treated as unknown.
GATEWAY_STATE_MAP: dict[str, ConnectionState] = {
    "open": ConnectionState.CONNECTED,
    "connecting": ConnectionState.CONNECTING,
    "close": ConnectionState.DISCONNECTED,
    "closed": ConnectionState.DISCONNECTED,
}


def map_gateway_state(raw: str | None) -> ConnectionState | None:
    """Translate a gateway state string into a local state (None if unknown)."""
    if not raw:
        return None
    return GATEWAY_STATE_MAP.get(raw.strip().lower())


def strip_jid(value: str | None) -> str | None:
    """Turn a WhatsApp JID ("5511...@s.whatsapp.net") into a bare address."""
    if not value:
        return None
    for suffix in JID_SUFFIXES:
        if value.endswith(suffix):
            value = value[: -len(suffix)]
    # Device suffix on multi-device JIDs ("5511...:12")
    return value.split(":", 1)[0] or None


@dataclass
class ProvisionedAccount:
    """Gateway response to account creation."""

    account_key: str
    secret: str | None
    pairing_payload: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionSnapshot:
    """Connection state as reported by the gateway for one account."""

    account_key: str
    raw_state: str | None
    phone_identity: str | None = None
    profile_name: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> ConnectionState | None:
        return map_gateway_state(self.raw_state)


@dataclass
class GatewayAccount:
    """Entry from the gateway's account listing."""

    account_key: str
    raw_state: str | None
    owner_jid: str | None = None
    profile_name: str | None = None
    secret: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> ConnectionState | None:
        return map_gateway_state(self.raw_state)

    @property
    def phone_identity(self) -> str | None:
        return strip_jid(self.owner_jid)


@dataclass
class SendReceipt:
    """Gateway acknowledgement of an outbound message."""

    message_id: str | None
    raw_response: dict[str, Any] = field(default_factory=dict)


class MessagingGateway(ABC):
    """
    Abstract interface for the messaging gateway REST surface.

    Each call may carry an account-specific credential; implementations fall
    back to the deployment-wide credential when it is omitted.
    Errors are raised as GatewayError / GatewayUnavailable.
    """

    @abstractmethod
    async def create_account(
        self,
        account_key: str,
        webhook_url: str | None = None,
    ) -> ProvisionedAccount:
        """Provision a new gateway account (always uses the deployment credential)."""
        ...

    @abstractmethod
    async def fetch_connection_state(
        self,
        account_key: str,
        api_key: str | None = None,
    ) -> ConnectionSnapshot:
        """Fetch the gateway's view of an account's connection."""
        ...

    @abstractmethod
    async def request_pairing(
        self,
        account_key: str,
        api_key: str | None = None,
    ) -> str | None:
        """Request (or refresh) the pairing payload (QR code) for an account."""
        ...

    @abstractmethod
    async def send_text(
        self,
        account_key: str,
        to: str,
        text: str,
        api_key: str | None = None,
    ) -> SendReceipt:
        """Send a text message from an account."""
        ...

    @abstractmethod
    async def disconnect(self, account_key: str, api_key: str | None = None) -> None:
        """Log the account out of WhatsApp, keeping it provisioned."""
        ...

    @abstractmethod
    async def delete_account(self, account_key: str, api_key: str | None = None) -> None:
        """Remove the account from the gateway."""
        ...

    @abstractmethod
    async def set_webhook(
        self,
        account_key: str,
        webhook_url: str,
        api_key: str | None = None,
    ) -> None:
        """Point the account's event callbacks at a webhook URL."""
        ...

    @abstractmethod
    async def list_accounts(self) -> list[GatewayAccount]:
        """List every account known to the gateway (deployment credential)."""
        ...

    async def fetch_account(self, account_key: str) -> GatewayAccount | None:
        """Find a single account in the gateway listing."""
        for account in await self.list_accounts():
            if account.account_key == account_key:
                return account
        return None

    async def close(self) -> None:
        """Release network resources."""
        return None
