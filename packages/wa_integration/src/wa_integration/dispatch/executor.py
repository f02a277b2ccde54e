"""
Dispatch Executor

Runs one dispatch job against the gateway:
1. Claims the job (cancellation is impossible afterwards)
2. Resolves the account credential
3. Applies the tenant rate limit
4. Sends via the gateway
5. Retries, dead-letters or completes, reflecting the result onto the Message
"""

import logging
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from wa_integration.dispatch.jobs import DispatchJob
from wa_integration.dispatch.queue import DispatchQueue
from wa_integration.dispatch.rate_limit import TenantRateLimiter
from wa_integration.dispatch.store import CANCELLED_MARKER
from wa_integration.errors import (
    GatewayError,
    MissingCredential,
    TransientDispatchFailure,
    classify_gateway_error,
)
from wa_integration.gateway.base import ConnectionState, MessagingGateway
from wa_integration.persistence.models import MessageStatus, WhatsAppAccount
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.persistence.secrets import SecretDecryptionError, decrypt_secret

logger = logging.getLogger(__name__)

MISSING_CREDENTIAL_CODE = "MISSING_CREDENTIAL"


class ExecutionOutcome(str, Enum):
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    RATE_LIMITED = "rate_limited"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class DispatchExecutor:
    """
    Executes dispatch jobs announced on the ready stream.

    Every outcome leaves the job in Redis in a consistent state, so the
    stream entry can be acknowledged whatever the result.
    """

    def __init__(
        self,
        db: Session,
        queue: DispatchQueue,
        gateway: MessagingGateway,
        rate_limiter: TenantRateLimiter,
        worker_name: str = "dispatch-worker",
        backoff_cap_ms: int = 300_000,
        pause_retry_ms: int = 5000,
        encryption_key: str | None = None,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.queue = queue
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.worker_name = worker_name
        self.backoff_cap_ms = backoff_cap_ms
        self.pause_retry_ms = pause_retry_ms
        self.encryption_key = encryption_key

    def resolve_credential(self, job: DispatchJob) -> tuple[WhatsAppAccount, str]:
        """
        Load the sending account and decrypt its secret.

        Raises:
            MissingCredential: Account gone, FAILED, without secret, or undecryptable
        """
        account = self.repo.get_account(job.account_id)
        if account is None:
            raise MissingCredential(job.account_id, reason="account not found")
        if account.status == ConnectionState.FAILED.value:
            raise MissingCredential(account.id, reason=account.provisioning_error or "account failed")
        if not account.secret_encrypted:
            raise MissingCredential(account.id, reason="missing")
        try:
            return account, decrypt_secret(account.secret_encrypted, self.encryption_key)
        except SecretDecryptionError:
            raise MissingCredential(account.id, reason="undecryptable")

    def _update_message(
        self,
        job: DispatchJob,
        status: MessageStatus,
        provider_message_id: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        if not job.message_id:
            return
        message = self.repo.get_message(job.message_id)
        if message is None:
            logger.warning(f"Message {job.message_id} of job {job.job_id} not found")
            return
        if status == MessageStatus.SENT:
            self.repo.mark_message_sent(message, provider_message_id)
        else:
            self.repo.update_message_status(message, status, error_code, error_message)

    async def execute(self, job_id: UUID | str) -> ExecutionOutcome:
        """Run one attempt of a job."""
        job = self.queue.get_job(job_id)
        if job is None or job.is_terminal:
            return ExecutionOutcome.SKIPPED

        existing_claim = self.queue.store.claim(job.job_id, self.worker_name)
        if existing_claim == CANCELLED_MARKER:
            self.queue.mark_cancelled(job)
            return ExecutionOutcome.CANCELLED

        if self.queue.is_paused():
            self.queue.reschedule(job, self.pause_retry_ms)
            return ExecutionOutcome.PAUSED

        try:
            account, api_key = self.resolve_credential(job)
        except MissingCredential as e:
            return self._fail_missing_credential(job, e)

        decision = self.rate_limiter.check(job.tenant_id)
        if not decision.allowed:
            self.queue.reschedule(job, decision.retry_after_seconds * 1000)
            logger.info(
                f"Dispatch job {job.job_id} rate limited, retry in {decision.retry_after_seconds}s",
                extra={"tenant_id": str(job.tenant_id), "window": decision.window},
            )
            return ExecutionOutcome.RATE_LIMITED

        self.queue.mark_active(job)
        job.attempts += 1

        try:
            receipt = await self.gateway.send_text(account.account_key, job.recipient, job.text, api_key)
        except GatewayError as e:
            return self._handle_failure(job, e)

        self.queue.complete(job, receipt.message_id)
        self._update_message(job, MessageStatus.SENT, provider_message_id=receipt.message_id)
        self.db.commit()

        logger.info(
            f"Dispatch job delivered: {job.job_id}",
            extra={
                "tenant_id": str(job.tenant_id),
                "attempts": job.attempts,
                "provider_message_id": receipt.message_id,
            },
        )
        return ExecutionOutcome.DELIVERED

    def _fail_missing_credential(self, job: DispatchJob, error: MissingCredential) -> ExecutionOutcome:
        """Dead-letter without consuming an attempt and mark the account FAILED."""
        account = self.repo.get_account(job.account_id)
        if account is not None and account.status != ConnectionState.FAILED.value:
            self.repo.mark_account_failed(account, f"credential {error.reason}")
            logger.error(
                f"Account {account.account_key} marked failed: {error}",
                extra={"account_id": str(account.id)},
            )

        self.queue.dead_letter(job, str(error), MISSING_CREDENTIAL_CODE)
        self._update_message(
            job,
            MessageStatus.FAILED,
            error_code=MISSING_CREDENTIAL_CODE,
            error_message=str(error),
        )
        self.db.commit()
        return ExecutionOutcome.DEAD_LETTERED

    def _handle_failure(self, job: DispatchJob, error: GatewayError) -> ExecutionOutcome:
        failure = classify_gateway_error(error)
        job.last_error = str(failure)
        job.last_error_code = failure.code

        if isinstance(failure, TransientDispatchFailure) and job.attempts < job.max_attempts:
            delay_ms = job.retry_delay_ms(self.backoff_cap_ms)
            self.queue.reschedule(job, delay_ms)
            logger.warning(
                f"Dispatch job {job.job_id} failed (attempt {job.attempts}/{job.max_attempts}), "
                f"retrying in {delay_ms}ms: {failure}",
                extra={"tenant_id": str(job.tenant_id), "code": failure.code},
            )
            return ExecutionOutcome.RETRY_SCHEDULED

        self.queue.dead_letter(job, str(failure), failure.code)
        self._update_message(
            job,
            MessageStatus.FAILED,
            error_code=failure.code,
            error_message=str(failure),
        )
        self.db.commit()
        return ExecutionOutcome.DEAD_LETTERED
