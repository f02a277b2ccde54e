"""
Connection Reconciler

Keeps locally stored account connection state in agreement with the gateway.

- request_connection: explicit connect (pairing) initiated by a tenant
- poll_all: periodic bounded-concurrency poll of every active account
- apply_webhook_event: connection.update / qrcode.updated from the webhook stream
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from wacore.clock import as_utc, utcnow
from wacore.settings import Settings

from wa_integration.contracts.event_types import CONNECTION_EVENTS
from wa_integration.contracts.payloads import WebhookEvent
from wa_integration.errors import (
    AccountNotFound,
    GatewayError,
    MissingCredential,
)
from wa_integration.gateway.base import ConnectionSnapshot, ConnectionState, MessagingGateway
from wa_integration.persistence.models import WhatsAppAccount
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.persistence.secrets import SecretDecryptionError, decrypt_secret
from wa_integration.reconciler.state import (
    MergeOutcome,
    MergeResult,
    Observation,
    ObservationSource,
    apply_observation,
    observation_from_webhook,
    register_orphan_strike,
)

logger = logging.getLogger(__name__)


@dataclass
class ConnectionResult:
    """Outcome of an explicit connect request."""

    account_id: UUID
    state: str
    already_connected: bool
    pairing_payload: str | None = None


@dataclass
class PollReport:
    """Summary of one poll cycle."""

    total: int = 0
    polled: int = 0
    skipped_fresh: int = 0
    changed: int = 0
    orphaned: int = 0
    errors: int = 0
    abandoned: int = 0
    duration_seconds: float = 0.0


@dataclass
class _ProbeResult:
    """Gateway view of one account, gathered without touching the session."""

    account_id: UUID
    observed_at: datetime
    snapshot: ConnectionSnapshot | None = None
    phone_identity: str | None = None
    error: GatewayError | None = None


class ConnectionReconciler:
    """
    Reconciles account connection state against the gateway.

    One instance per unit of work; the session is committed after each
    account is updated so one failing account never rolls back another.
    """

    def __init__(
        self,
        db: Session,
        gateway: MessagingGateway,
        concurrency: int = 8,
        deadline_seconds: float = 120.0,
        interval_seconds: int = 300,
        webhook_grace_seconds: int = 300,
        encryption_key: str | None = None,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.gateway = gateway
        self.concurrency = max(1, concurrency)
        self.deadline_seconds = deadline_seconds
        self.webhook_grace = timedelta(seconds=webhook_grace_seconds)
        # A fresh webhook skips at most one cycle: after a skip the last poll
        # is older than this and the next cycle polls.
        self.max_skip_age = timedelta(seconds=interval_seconds * 1.5)
        self.encryption_key = encryption_key

    @classmethod
    def from_settings(cls, db: Session, gateway: MessagingGateway, settings: Settings) -> "ConnectionReconciler":
        return cls(
            db,
            gateway,
            concurrency=settings.RECONCILE_CONCURRENCY,
            deadline_seconds=settings.RECONCILE_DEADLINE_SECONDS,
            interval_seconds=settings.RECONCILE_INTERVAL_SECONDS,
            webhook_grace_seconds=settings.RECONCILE_WEBHOOK_GRACE_SECONDS,
            encryption_key=settings.ENCRYPTION_KEY,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def account_api_key(self, account: WhatsAppAccount) -> str | None:
        """Account credential, or None to fall back to the deployment credential."""
        if not account.secret_encrypted:
            return None
        try:
            return decrypt_secret(account.secret_encrypted, self.encryption_key)
        except SecretDecryptionError:
            logger.warning(f"Cannot decrypt secret of {account.account_key}, using deployment credential")
            return None

    async def _resolve_phone(self, account_key: str, snapshot_phone: str | None) -> str | None:
        """Phone identity for a connected account, looking it up if the state call had none."""
        if snapshot_phone:
            return snapshot_phone
        try:
            listed = await self.gateway.fetch_account(account_key)
        except GatewayError as e:
            logger.debug(f"Could not resolve phone identity for {account_key}: {e}")
            return None
        return listed.phone_identity if listed else None

    def _require_account(self, account_id: UUID, for_update: bool = False) -> WhatsAppAccount:
        account = self.repo.get_account(account_id, for_update=for_update)
        if not account:
            raise AccountNotFound(account_id)
        return account

    # =========================================================================
    # Explicit connect
    # =========================================================================

    async def request_connection(self, account_id: UUID) -> ConnectionResult:
        """
        Connect an account (or confirm it is already connected).

        Gateway calls run before the account row is locked; the lock is only
        held while the result is merged.

        Raises:
            AccountNotFound: No local account
            MissingCredential: Account is FAILED and its credential is unusable
            GatewayUnavailable: Gateway unreachable or no longer knows the account
        """
        account = self._require_account(account_id)
        account_key = account.account_key
        api_key = self.account_api_key(account)

        if account.status == ConnectionState.FAILED.value and (not account.secret_encrypted or api_key is None):
            raise MissingCredential(account.id, reason=account.provisioning_error or "failed")

        observed_at = utcnow()
        snapshot = await self.gateway.fetch_connection_state(account_key, api_key)

        if snapshot.state == ConnectionState.CONNECTED:
            phone = await self._resolve_phone(account_key, snapshot.phone_identity)
            observation = Observation(
                state=ConnectionState.CONNECTED,
                observed_at=observed_at,
                source=ObservationSource.LOCAL,
                phone_identity=phone,
                profile_name=snapshot.profile_name,
                raw_state=snapshot.raw_state,
            )
        else:
            pairing_requested_at = utcnow()
            pairing_payload = await self.gateway.request_pairing(account_key, api_key)
            observation = Observation(
                state=ConnectionState.CONNECTING,
                observed_at=pairing_requested_at,
                source=ObservationSource.LOCAL,
                pairing_payload=pairing_payload,
                raw_state="connecting",
            )

        account = self._require_account(account_id, for_update=True)
        if account.status == ConnectionState.FAILED.value:
            # Explicit reconnect of a failed account with a usable credential
            logger.info(f"Clearing failed state of {account_key} on reconnect")
            account.status = ConnectionState.DISCONNECTED.value
            account.provisioning_error = None

        merge = apply_observation(account, observation)
        self.db.commit()

        if observation.state == ConnectionState.CONNECTED:
            if merge.outcome == MergeOutcome.MISSING_IDENTITY:
                logger.warning(f"{account_key} is open on the gateway but has no phone identity yet")
            return ConnectionResult(account.id, account.status, already_connected=True)

        logger.info(
            f"Pairing requested for {account_key}",
            extra={"account_id": str(account.id), "has_payload": bool(observation.pairing_payload)},
        )
        return ConnectionResult(
            account.id,
            account.status,
            already_connected=False,
            pairing_payload=account.pairing_payload,
        )

    # =========================================================================
    # Periodic poll
    # =========================================================================

    def _webhook_is_fresh(self, account: WhatsAppAccount, now: datetime) -> bool:
        last_webhook = as_utc(account.last_webhook_at)
        last_polled = as_utc(account.last_polled_at)
        if last_webhook is None or last_polled is None:
            return False
        return now - last_webhook <= self.webhook_grace and now - last_polled <= self.max_skip_age

    async def _probe(self, account_id: UUID, account_key: str, api_key: str | None) -> _ProbeResult:
        """Gateway I/O for one account. Never touches the session."""
        observed_at = utcnow()
        try:
            snapshot = await self.gateway.fetch_connection_state(account_key, api_key)
        except GatewayError as e:
            return _ProbeResult(account_id, observed_at, error=e)

        phone = snapshot.phone_identity
        if snapshot.state == ConnectionState.CONNECTED:
            phone = await self._resolve_phone(account_key, phone)
        return _ProbeResult(account_id, observed_at, snapshot=snapshot, phone_identity=phone)

    def _apply_probe(self, probe: _ProbeResult, report: PollReport) -> MergeResult | None:
        account = self.repo.get_account(probe.account_id, for_update=True)
        if account is None:
            return None

        account.last_polled_at = probe.observed_at
        merge = None

        if probe.error is not None:
            if probe.error.is_auth_or_missing:
                if register_orphan_strike(account, probe.observed_at):
                    report.orphaned += 1
                    logger.warning(
                        f"Account {account.account_key} orphaned on the gateway",
                        extra={"account_id": str(account.id), "status_code": probe.error.status_code},
                    )
            else:
                report.errors += 1
                logger.warning(
                    f"Poll failed for {account.account_key}: {probe.error}",
                    extra={"account_id": str(account.id), "code": probe.error.code},
                )
        else:
            snapshot = probe.snapshot
            merge = apply_observation(
                account,
                Observation(
                    state=snapshot.state,
                    observed_at=probe.observed_at,
                    source=ObservationSource.POLL,
                    phone_identity=probe.phone_identity,
                    profile_name=snapshot.profile_name,
                    raw_state=snapshot.raw_state,
                ),
            )
            if merge.changed:
                report.changed += 1
                logger.info(
                    f"Reconciled {account.account_key}: {merge.previous_state} -> {merge.current_state}",
                    extra={"account_id": str(account.id), "source": "poll"},
                )
            elif merge.outcome in (MergeOutcome.UNKNOWN_STATE, MergeOutcome.MISSING_IDENTITY):
                logger.debug(f"Poll result for {account.account_key} not applied: {merge.outcome.value}")

        self.db.commit()
        return merge

    async def poll_all(self) -> PollReport:
        """
        Poll every non-deleted, non-failed account once.

        Gateway calls run concurrently (bounded by `concurrency`); results are
        applied one at a time as they arrive. When the soft deadline passes,
        outstanding calls are cancelled and left to the next cycle.
        """
        started = time.monotonic()
        now = utcnow()
        report = PollReport()

        targets = []
        for account in self.repo.list_reconcilable_accounts():
            report.total += 1
            if self._webhook_is_fresh(account, now):
                report.skipped_fresh += 1
                continue
            targets.append((account.id, account.account_key, self.account_api_key(account)))

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded_probe(account_id: UUID, account_key: str, api_key: str | None) -> _ProbeResult:
            async with semaphore:
                return await self._probe(account_id, account_key, api_key)

        tasks = [asyncio.ensure_future(bounded_probe(*target)) for target in targets]

        try:
            for next_done in asyncio.as_completed(tasks, timeout=self.deadline_seconds):
                probe = await next_done
                report.polled += 1
                try:
                    self._apply_probe(probe, report)
                except Exception as e:
                    self.db.rollback()
                    report.errors += 1
                    logger.error(f"Failed to apply poll result for {probe.account_id}: {e}", exc_info=True)
        except asyncio.TimeoutError:
            logger.warning(f"Poll cycle hit its {self.deadline_seconds}s deadline")
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            report.abandoned = len(pending)

        report.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Poll cycle complete",
            extra={
                "total": report.total,
                "polled": report.polled,
                "skipped_fresh": report.skipped_fresh,
                "changed": report.changed,
                "orphaned": report.orphaned,
                "errors": report.errors,
                "abandoned": report.abandoned,
                "duration_seconds": report.duration_seconds,
            },
        )
        return report

    # =========================================================================
    # Webhook events
    # =========================================================================

    async def apply_webhook_event(
        self,
        account_key: str,
        event: WebhookEvent,
        received_at: datetime,
    ) -> MergeResult | None:
        """
        Apply a connection.update or qrcode.updated event.

        `received_at` is when the webhook service accepted the request.
        Returns None for unknown accounts and non-connection events.
        """
        if event.event not in CONNECTION_EVENTS:
            return None

        account = self.repo.get_account_by_key(account_key)
        if account is None:
            logger.info(f"Connection event for unknown account {account_key}, ignoring")
            return None

        observation = observation_from_webhook(event, received_at)
        if (
            observation.state == ConnectionState.CONNECTED
            and not observation.phone_identity
            and not account.phone_identity
        ):
            observation.phone_identity = await self._resolve_phone(account_key, None)

        account = self.repo.get_account_by_key(account_key, for_update=True)
        if account is None:
            return None

        last_webhook = as_utc(account.last_webhook_at)
        if last_webhook is None or received_at > last_webhook:
            account.last_webhook_at = received_at

        merge = apply_observation(account, observation)
        self.db.commit()

        if merge.changed:
            logger.info(
                f"Reconciled {account_key}: {merge.previous_state} -> {merge.current_state}",
                extra={"account_id": str(account.id), "source": "webhook", "event": event.event},
            )
        elif not merge.applied:
            logger.debug(f"Webhook {event.event} for {account_key} not applied: {merge.outcome.value}")
        return merge
