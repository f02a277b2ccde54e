"""
Account Service

Application-facing account lifecycle: create, list, get, connect,
disconnect, delete and connection status.

Provisioning on the gateway is best-effort at creation time: the local row is
kept even when the gateway call fails, and the failure is recorded on it so a
later connect can provision again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from wacore.clock import utcnow
from wacore.settings import Settings

from wa_integration.errors import AccountNotFound, GatewayError, InvalidAccountState
from wa_integration.gateway.base import ConnectionState, MessagingGateway
from wa_integration.persistence.models import WhatsAppAccount
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.persistence.secrets import encrypt_secret
from wa_integration.reconciler.service import ConnectionReconciler, ConnectionResult
from wa_integration.reconciler.state import ObservationSource

logger = logging.getLogger(__name__)


def generate_account_key(tenant_id: UUID) -> str:
    """Gateway account name: tenant prefix plus a random suffix."""
    return f"{str(tenant_id)[:8]}_{uuid4().hex[:8]}"


@dataclass
class ConnectionStatus:
    """Locally cached connection state of an account."""

    account_id: UUID
    account_key: str
    state: str
    phone_identity: str | None
    pairing_payload: str | None
    last_connected_at: datetime | None
    needs_attention: bool
    provisioning_error: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": str(self.account_id),
            "account_key": self.account_key,
            "state": self.state,
            "phone_identity": self.phone_identity,
            "pairing_payload": self.pairing_payload,
            "last_connected_at": self.last_connected_at.isoformat() if self.last_connected_at else None,
            "needs_attention": self.needs_attention,
            "provisioning_error": self.provisioning_error,
        }


def account_to_dict(account: WhatsAppAccount) -> dict[str, Any]:
    """Public representation of an account. The secret is never included."""
    return {
        "id": str(account.id),
        "tenant_id": str(account.tenant_id),
        "account_key": account.account_key,
        "display_name": account.display_name,
        "status": account.status,
        "phone_identity": account.phone_identity,
        "profile_name": account.profile_name,
        "last_connected_at": account.last_connected_at.isoformat() if account.last_connected_at else None,
        "needs_attention": account.needs_attention,
        "provisioning_error": account.provisioning_error,
        "created_at": account.created_at.isoformat() if account.created_at else None,
    }


class AccountService:
    """Tenant-scoped account operations."""

    def __init__(
        self,
        db: Session,
        gateway: MessagingGateway,
        reconciler: ConnectionReconciler,
        backend_url: str = "http://localhost:8090",
        encryption_key: str | None = None,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.gateway = gateway
        self.reconciler = reconciler
        self.backend_url = backend_url.rstrip("/")
        self.encryption_key = encryption_key

    @classmethod
    def from_settings(cls, db: Session, gateway: MessagingGateway, settings: Settings) -> "AccountService":
        return cls(
            db,
            gateway,
            ConnectionReconciler.from_settings(db, gateway, settings),
            backend_url=settings.BACKEND_URL,
            encryption_key=settings.ENCRYPTION_KEY,
        )

    def webhook_url(self, account_key: str) -> str:
        return f"{self.backend_url}/webhook/{account_key}"

    def get_account(self, tenant_id: UUID, account_id: UUID) -> WhatsAppAccount:
        """
        Raises:
            AccountNotFound: No live account with this id for the tenant
        """
        account = self.repo.get_account(account_id)
        if account is None or account.tenant_id != tenant_id or account.is_deleted:
            raise AccountNotFound(account_id)
        return account

    def list_accounts(self, tenant_id: UUID) -> list[WhatsAppAccount]:
        return self.repo.list_accounts(tenant_id)

    async def _provision(self, account: WhatsAppAccount) -> bool:
        """Create the account on the gateway and store its secret."""
        try:
            provisioned = await self.gateway.create_account(
                account.account_key,
                webhook_url=self.webhook_url(account.account_key),
            )
        except GatewayError as e:
            account.provisioning_error = str(e)
            self.db.commit()
            logger.error(
                f"Gateway provisioning failed for {account.account_key}: {e}",
                extra={"account_id": str(account.id), "code": e.code},
            )
            return False

        if provisioned.secret:
            account.secret_encrypted = encrypt_secret(provisioned.secret, self.encryption_key)
        account.provisioning_error = None
        self.db.commit()
        logger.info(f"Account {account.account_key} provisioned", extra={"account_id": str(account.id)})
        return True

    async def create_account(self, tenant_id: UUID, display_name: str) -> WhatsAppAccount:
        """
        Create an account locally, then provision it on the gateway.

        The local row survives a provisioning failure, with the error recorded
        in `provisioning_error`.
        """
        account = self.repo.create_account(
            tenant_id=tenant_id,
            account_key=generate_account_key(tenant_id),
            display_name=display_name,
        )
        self.db.commit()
        await self._provision(account)
        return account

    async def connect(self, tenant_id: UUID, account_id: UUID) -> ConnectionResult:
        """
        Start pairing, or confirm the account is already connected.

        An account whose provisioning failed is provisioned again first.

        Raises:
            AccountNotFound: Unknown account
            MissingCredential: Account is FAILED without a usable secret
            GatewayUnavailable: Gateway unreachable or account missing there
        """
        account = self.get_account(tenant_id, account_id)
        if (
            account.status != ConnectionState.FAILED.value
            and account.provisioning_error
            and not account.secret_encrypted
        ):
            if not await self._provision(account):
                raise GatewayError(
                    f"Account {account.account_key} could not be provisioned: {account.provisioning_error}",
                    code="PROVISIONING_FAILED",
                    retryable=True,
                )
        return await self.reconciler.request_connection(account.id)

    async def disconnect(self, tenant_id: UUID, account_id: UUID) -> WhatsAppAccount:
        """
        Log the account out on the gateway and mark it disconnected.

        Raises:
            InvalidAccountState: Account is FAILED
        """
        account = self.get_account(tenant_id, account_id)
        if account.status == ConnectionState.FAILED.value:
            raise InvalidAccountState(f"Account {account.account_key} is failed; reconnect it instead")

        await self.gateway.disconnect(account.account_key, self.reconciler.account_api_key(account))

        account.status = ConnectionState.DISCONNECTED.value
        account.pairing_payload = None
        account.state_observed_at = utcnow()
        account.state_source = ObservationSource.LOCAL.value
        self.db.commit()
        logger.info(f"Account {account.account_key} disconnected", extra={"account_id": str(account.id)})
        return account

    async def delete_account(self, tenant_id: UUID, account_id: UUID) -> None:
        """Soft-delete locally, then delete on the gateway (best-effort)."""
        account = self.get_account(tenant_id, account_id)
        api_key = self.reconciler.account_api_key(account)
        self.repo.soft_delete_account(account)
        self.db.commit()

        try:
            await self.gateway.delete_account(account.account_key, api_key)
        except GatewayError as e:
            logger.warning(
                f"Gateway delete of {account.account_key} failed, local row already deleted: {e}",
                extra={"account_id": str(account.id)},
            )
            return
        logger.info(f"Account {account.account_key} deleted", extra={"account_id": str(account.id)})

    async def configure_webhook(self, tenant_id: UUID, account_id: UUID) -> str:
        """Point the gateway callbacks of an account at this deployment."""
        account = self.get_account(tenant_id, account_id)
        url = self.webhook_url(account.account_key)
        await self.gateway.set_webhook(account.account_key, url, self.reconciler.account_api_key(account))
        logger.info(f"Webhook for {account.account_key} set to {url}")
        return url

    def get_connection_status(self, tenant_id: UUID, account_id: UUID) -> ConnectionStatus:
        """Connection state from the local cache, without a gateway call."""
        account = self.get_account(tenant_id, account_id)
        return ConnectionStatus(
            account_id=account.id,
            account_key=account.account_key,
            state=account.status,
            phone_identity=account.phone_identity,
            pairing_payload=account.pairing_payload,
            last_connected_at=account.last_connected_at,
            needs_attention=account.needs_attention,
            provisioning_error=account.provisioning_error,
        )
