"""
Messaging Service

Application sends: every request records a pending outbound Message in its
conversation and hands the text to the dispatch queue. Delivery status flows
back onto the Message from the executor and from messages.update webhooks.
A send the queue cannot accept leaves its Messages failed with ENQUEUE_FAILED.
"""

import logging
from datetime import datetime
from uuid import UUID

import redis
from sqlalchemy.orm import Session

from wa_integration.dispatch.jobs import DispatchJob
from wa_integration.dispatch.queue import BulkResult, DispatchQueue
from wa_integration.errors import AccountNotFound, DispatchUnavailable
from wa_integration.persistence.models import (
    MessageDirection,
    MessageStatus,
    WhatsAppAccount,
    WhatsAppMessage,
)
from wa_integration.persistence.repo import WhatsAppRepository

logger = logging.getLogger(__name__)

ENQUEUE_FAILED = "ENQUEUE_FAILED"


class MessagingService:
    """Single, bulk and scheduled sends for a tenant's account."""

    def __init__(self, db: Session, queue: DispatchQueue):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.queue = queue

    def _require_account(self, tenant_id: UUID, account_id: UUID) -> WhatsAppAccount:
        account = self.repo.get_account(account_id)
        if account is None or account.tenant_id != tenant_id or account.is_deleted:
            raise AccountNotFound(account_id)
        return account

    def _record_outbound(self, account: WhatsAppAccount, recipient: str, text: str) -> WhatsAppMessage:
        conversation, _created = self.repo.get_or_create_conversation(
            tenant_id=account.tenant_id,
            account_id=account.id,
            remote_address=recipient,
        )
        message = self.repo.create_message(
            tenant_id=account.tenant_id,
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            message_type="text",
            content=text,
            status=MessageStatus.PENDING,
        )
        self.repo.update_conversation_last_message(conversation, MessageDirection.OUTBOUND)
        return message

    def _fail_unqueued(
        self, tenant_id: UUID, messages: list[WhatsAppMessage], error: redis.RedisError
    ) -> DispatchUnavailable:
        """Mark messages the queue never accepted as failed. Returns the error to raise."""
        for message in messages:
            self.repo.update_message_status(
                message,
                MessageStatus.FAILED,
                error_code=ENQUEUE_FAILED,
                error_message=str(error),
            )
        self.db.commit()
        logger.error(
            f"Dispatch queue rejected {len(messages)} message(s): {error}",
            extra={"tenant_id": str(tenant_id)},
        )
        return DispatchUnavailable(
            f"Dispatch queue unavailable: {error}",
            message_ids=[message.id for message in messages],
        )

    def send_single(self, tenant_id: UUID, account_id: UUID, to: str, text: str) -> DispatchJob:
        """
        Record and queue one message for immediate sending.

        Raises:
            DispatchUnavailable: The queue rejected the job (message marked failed)
        """
        account = self._require_account(tenant_id, account_id)
        message = self._record_outbound(account, to, text)
        self.db.commit()
        try:
            return self.queue.enqueue_single(tenant_id, account.id, to, text, message_id=message.id)
        except redis.RedisError as e:
            raise self._fail_unqueued(tenant_id, [message], e) from e

    def send_bulk(
        self,
        tenant_id: UUID,
        account_id: UUID,
        recipients: list[str],
        text: str,
        delay_ms: int | None = None,
    ) -> BulkResult:
        """
        Record and queue the same text for many recipients, spaced by `delay_ms`.

        When the queue fails part-way every Message of the batch is marked
        failed; items that were queued still advance to sent when delivered.

        Raises:
            ValueError: Empty recipient list or non-positive delay
            DispatchUnavailable: The queue rejected the batch
        """
        if not recipients:
            raise ValueError("At least one recipient is required")
        if delay_ms is not None and delay_ms <= 0:
            raise ValueError("Bulk delay must be a positive number of milliseconds")

        account = self._require_account(tenant_id, account_id)
        messages = [self._record_outbound(account, recipient, text) for recipient in recipients]
        self.db.commit()

        try:
            result = self.queue.enqueue_bulk(
                tenant_id,
                account.id,
                recipients,
                text,
                delay_ms=delay_ms,
                message_ids=[message.id for message in messages],
            )
        except redis.RedisError as e:
            raise self._fail_unqueued(tenant_id, messages, e) from e
        logger.info(
            f"Bulk send of {result.total_queued} messages, ~{result.estimated_seconds:.0f}s",
            extra={"tenant_id": str(tenant_id), "batch_id": str(result.batch_id)},
        )
        return result

    def send_scheduled(
        self,
        tenant_id: UUID,
        account_id: UUID,
        to: str,
        text: str,
        send_at: datetime,
    ) -> DispatchJob:
        """
        Record and queue a message for a future time.

        Raises:
            ValueError: send_at is not in the future
            DispatchUnavailable: The queue rejected the job (message marked failed)
        """
        account = self._require_account(tenant_id, account_id)
        message = self._record_outbound(account, to, text)
        try:
            job = self.queue.enqueue_scheduled(tenant_id, account.id, to, text, send_at, message_id=message.id)
        except ValueError:
            self.db.rollback()
            raise
        except redis.RedisError as e:
            raise self._fail_unqueued(tenant_id, [message], e) from e
        self.db.commit()
        return job
