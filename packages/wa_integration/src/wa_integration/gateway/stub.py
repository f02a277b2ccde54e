"""
Stub Gateway

Development gateway that keeps accounts in memory and records every send
without making network calls. Failures can be scripted for testing.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from wa_integration.errors import GatewayError, GatewayUnavailable
from wa_integration.gateway.base import (
    ConnectionSnapshot,
    GatewayAccount,
    MessagingGateway,
    ProvisionedAccount,
    SendReceipt,
)

logger = logging.getLogger(__name__)


class StubGateway(MessagingGateway):
    """
    Stub gateway for development and testing.

    - Accounts live in a dict keyed by account key
    - `send_text` appends to `sent_messages`
    - Errors queued with `fail_next_send` are raised in order
    """

    def __init__(self):
        self.accounts: dict[str, dict[str, Any]] = {}
        self.sent_messages: list[dict[str, Any]] = []
        self.calls: list[tuple[str, str]] = []
        self._send_failures: deque[Exception] = deque()

    def add_account(
        self,
        account_key: str,
        state: str = "close",
        owner_jid: str | None = None,
        secret: str | None = None,
    ) -> None:
        """Register an account as if it had been created out of band."""
        self.accounts[account_key] = {
            "state": state,
            "owner_jid": owner_jid,
            "secret": secret or uuid4().hex,
        }

    def set_state(self, account_key: str, state: str, owner_jid: str | None = None) -> None:
        """Change the gateway-side state of an account."""
        account = self.accounts[account_key]
        account["state"] = state
        if owner_jid is not None:
            account["owner_jid"] = owner_jid

    def fail_next_send(self, error: Exception) -> None:
        """Queue an error for the next send_text call."""
        self._send_failures.append(error)

    def _require(self, account_key: str) -> dict[str, Any]:
        account = self.accounts.get(account_key)
        if account is None:
            raise GatewayUnavailable(
                message=f'The "{account_key}" instance does not exist',
                code="404",
                status_code=404,
            )
        return account

    async def create_account(
        self,
        account_key: str,
        webhook_url: str | None = None,
    ) -> ProvisionedAccount:
        self.calls.append(("create_account", account_key))
        if account_key in self.accounts:
            raise GatewayError("Instance already exists", code="409", status_code=409)

        self.add_account(account_key)
        secret = self.accounts[account_key]["secret"]
        logger.info(f"[STUB] Created account {account_key}")
        return ProvisionedAccount(account_key=account_key, secret=secret)

    async def fetch_connection_state(
        self,
        account_key: str,
        api_key: str | None = None,
    ) -> ConnectionSnapshot:
        self.calls.append(("fetch_connection_state", account_key))
        account = self._require(account_key)
        return ConnectionSnapshot(account_key=account_key, raw_state=account["state"])

    async def request_pairing(
        self,
        account_key: str,
        api_key: str | None = None,
    ) -> str | None:
        self.calls.append(("request_pairing", account_key))
        account = self._require(account_key)
        account["state"] = "connecting"
        return f"stub-qr-{account_key}-{uuid4().hex[:8]}"

    async def send_text(
        self,
        account_key: str,
        to: str,
        text: str,
        api_key: str | None = None,
    ) -> SendReceipt:
        self.calls.append(("send_text", account_key))
        if self._send_failures:
            raise self._send_failures.popleft()

        message_id = f"stub_msg_{uuid4().hex[:16]}"
        self.sent_messages.append({
            "account_key": account_key,
            "to": to,
            "text": text,
            "api_key": api_key,
            "message_id": message_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

        logger.info(
            "[STUB] Sending text message",
            extra={
                "to": to,
                "text": text[:100] + "..." if len(text) > 100 else text,
                "message_id": message_id,
            },
        )
        return SendReceipt(message_id=message_id)

    async def disconnect(self, account_key: str, api_key: str | None = None) -> None:
        self.calls.append(("disconnect", account_key))
        self._require(account_key)["state"] = "close"

    async def delete_account(self, account_key: str, api_key: str | None = None) -> None:
        self.calls.append(("delete_account", account_key))
        self._require(account_key)
        del self.accounts[account_key]

    async def set_webhook(
        self,
        account_key: str,
        webhook_url: str,
        api_key: str | None = None,
    ) -> None:
        self.calls.append(("set_webhook", account_key))
        self._require(account_key)["webhook_url"] = webhook_url

    async def list_accounts(self) -> list[GatewayAccount]:
        self.calls.append(("list_accounts", ""))
        return [
            GatewayAccount(
                account_key=key,
                raw_state=account["state"],
                owner_jid=account["owner_jid"],
                secret=account["secret"],
            )
            for key, account in self.accounts.items()
        ]
