"""
Evolution API Gateway Client

Client for Evolution API v2 (Baileys-based WhatsApp Web gateway).
Typed wrapper over its REST surface; no business logic lives here.

Documentation: https://doc.evolution-api.com/
"""

import logging
from typing import Any

import httpx

from wa_integration.errors import GatewayError, GatewayUnavailable
from wa_integration.gateway.base import (
    ConnectionSnapshot,
    GatewayAccount,
    MessagingGateway,
    ProvisionedAccount,
    SendReceipt,
    strip_jid,
)

logger = logging.getLogger(__name__)

# Events the gateway pushes to our webhook for every account we create
WEBHOOK_EVENTS = [
    "APPLICATION_STARTUP",
    "QRCODE_UPDATED",
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "MESSAGES_DELETE",
    "SEND_MESSAGE",
    "CONNECTION_UPDATE",
]


def _error_message(data: Any) -> str:
    """Pull a readable error out of an Evolution error body."""
    if not isinstance(data, dict):
        return str(data) if data else "Unknown error"

    response = data.get("response")
    if isinstance(response, dict) and response.get("message"):
        message = response["message"]
        return "; ".join(str(m) for m in message) if isinstance(message, list) else str(message)

    return str(data.get("message") or data.get("error") or "Unknown error")


def _pairing_from_response(data: dict[str, Any]) -> str | None:
    """Extract the pairing payload from a connect/create response."""
    if not isinstance(data, dict):
        return None
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict):
        nested = qrcode.get("base64") or qrcode.get("code")
        if nested:
            return nested
    return data.get("base64") or data.get("code") or data.get("qr") or data.get("pairingCode")


class EvolutionGatewayClient(MessagingGateway):
    """
    Evolution API gateway client.

    The deployment-wide API key authenticates create/list calls; every other
    call may pass the account's own key, which takes precedence.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the gateway client.

        Args:
            api_url: Base URL of Evolution API (e.g., "https://evolution.example.com")
            api_key: Deployment-wide API key
            timeout: HTTP request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        api_key: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated API request."""
        client = await self._get_client()
        url = f"{self.api_url}{endpoint}"

        try:
            response = await client.request(
                method.upper(),
                url,
                json=json_data,
                params=params,
                headers={"apikey": api_key or self.api_key},
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Gateway request timed out: {method} {endpoint}")
            raise GatewayUnavailable(
                message=f"Gateway timeout: {e}",
                code="TIMEOUT",
                retryable=True,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Gateway request failed: {e}")
            raise GatewayUnavailable(
                message=f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        try:
            response_data = response.json()
        except ValueError:
            response_data = {"raw": response.text}

        status = response.status_code
        if status >= 400:
            message = _error_message(response_data)
            details = response_data if isinstance(response_data, dict) else {"body": response_data}
            error_cls = GatewayUnavailable if status == 404 else GatewayError
            raise error_cls(
                message=message,
                code=str(status),
                details=details,
                retryable=status >= 500 or status == 429,
                status_code=status,
            )

        return response_data

    async def create_account(
        self,
        account_key: str,
        webhook_url: str | None = None,
    ) -> ProvisionedAccount:
        """
        Create a new Evolution instance.

        Args:
            account_key: Unique instance name
            webhook_url: Callback URL registered for the instance's events

        Returns:
            ProvisionedAccount with the instance-specific API key (hash)
        """
        payload: dict[str, Any] = {
            "instanceName": account_key,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        if webhook_url:
            payload["webhook"] = {
                "url": webhook_url,
                "byEvents": False,
                "base64": True,
                "events": WEBHOOK_EVENTS,
            }

        response = await self._make_request("POST", "/instance/create", payload)

        # v2 returns the key as a string, v1 as {"apikey": "..."}
        secret = response.get("hash")
        if isinstance(secret, dict):
            secret = secret.get("apikey")

        logger.info(
            f"Provisioned gateway account {account_key}",
            extra={"account_key": account_key, "has_secret": bool(secret)},
        )

        return ProvisionedAccount(
            account_key=account_key,
            secret=secret,
            pairing_payload=_pairing_from_response(response),
            raw_response=response,
        )

    async def fetch_connection_state(
        self,
        account_key: str,
        api_key: str | None = None,
    ) -> ConnectionSnapshot:
        """Get the connection state of an instance."""
        response = await self._make_request(
            "GET", f"/instance/connectionState/{account_key}", api_key=api_key
        )
        instance = response.get("instance") or {}

        return ConnectionSnapshot(
            account_key=account_key,
            raw_state=instance.get("state") or response.get("state"),
            phone_identity=strip_jid(instance.get("wuid") or instance.get("owner")),
            profile_name=instance.get("profileName"),
            raw_response=response,
        )

    async def request_pairing(
        self,
        account_key: str,
        api_key: str | None = None,
    ) -> str | None:
        """Connect an instance and return its QR/pairing payload."""
        response = await self._make_request(
            "GET", f"/instance/connect/{account_key}", api_key=api_key
        )
        return _pairing_from_response(response)

    async def send_text(
        self,
        account_key: str,
        to: str,
        text: str,
        api_key: str | None = None,
    ) -> SendReceipt:
        """Send a text message via Evolution API."""
        payload = {"number": to, "text": text}

        response = await self._make_request(
            "POST", f"/message/sendText/{account_key}", payload, api_key=api_key
        )
        message_id = (response.get("key") or {}).get("id") or response.get("id")

        logger.info(
            "Sent text message via gateway",
            extra={"to": to, "message_id": message_id, "account_key": account_key},
        )

        return SendReceipt(message_id=message_id, raw_response=response)

    async def disconnect(self, account_key: str, api_key: str | None = None) -> None:
        """Logout an instance."""
        await self._make_request("DELETE", f"/instance/logout/{account_key}", api_key=api_key)

    async def delete_account(self, account_key: str, api_key: str | None = None) -> None:
        """Delete an instance."""
        await self._make_request("DELETE", f"/instance/delete/{account_key}", api_key=api_key)

    async def set_webhook(
        self,
        account_key: str,
        webhook_url: str,
        api_key: str | None = None,
    ) -> None:
        """Point an instance's webhook at our callback URL."""
        payload = {
            "webhook": {
                "enabled": True,
                "url": webhook_url,
                "byEvents": False,
                "base64": True,
                "events": WEBHOOK_EVENTS,
            }
        }
        await self._make_request("POST", f"/webhook/set/{account_key}", payload, api_key=api_key)

    async def list_accounts(self) -> list[GatewayAccount]:
        """List all instances (deployment key)."""
        response = await self._make_request("GET", "/instance/fetchInstances")
        entries = response if isinstance(response, list) else response.get("instance", [])
        return [self._parse_account(entry) for entry in entries if isinstance(entry, dict)]

    async def fetch_account(self, account_key: str) -> GatewayAccount | None:
        """Look up one instance by name."""
        response = await self._make_request(
            "GET", "/instance/fetchInstances", params={"instanceName": account_key}
        )
        entries = response if isinstance(response, list) else [response]
        for entry in entries:
            if isinstance(entry, dict):
                account = self._parse_account(entry)
                if account.account_key == account_key:
                    return account
        return None

    @staticmethod
    def _parse_account(entry: dict[str, Any]) -> GatewayAccount:
        """Normalize a fetchInstances entry (v2 flat, v1 nested under "instance")."""
        if isinstance(entry.get("instance"), dict):
            inner = entry["instance"]
            return GatewayAccount(
                account_key=inner.get("instanceName", ""),
                raw_state=inner.get("status") or inner.get("state"),
                owner_jid=inner.get("owner"),
                profile_name=inner.get("profileName"),
                secret=inner.get("apikey"),
                raw=entry,
            )

        return GatewayAccount(
            account_key=entry.get("name") or entry.get("instanceName", ""),
            raw_state=entry.get("connectionStatus") or entry.get("status"),
            owner_jid=entry.get("ownerJid") or entry.get("owner"),
            profile_name=entry.get("profileName"),
            secret=entry.get("token"),
            raw=entry,
        )
