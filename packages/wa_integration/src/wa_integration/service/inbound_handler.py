"""
Inbound Webhook Handler

Processes authenticated gateway callbacks read from the inbound stream:
1. Parses the webhook body
2. Routes connection events to the reconciler
3. Persists inbound messages (idempotent by provider message id)
4. Advances delivery status of outbound messages
5. Runs the auto-response policy and queues generated replies
"""

import logging
from typing import Any

import redis
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wa_integration.contracts.envelope import IntegrationEnvelope
from wa_integration.contracts.event_types import CONNECTION_EVENTS, GatewayEvent
from wa_integration.contracts.payloads import InboundMessagePayload, WebhookEvent
from wa_integration.dispatch.queue import DispatchQueue
from wa_integration.errors import QuotaExceeded
from wa_integration.gateway.webhook import (
    extract_inbound_messages,
    extract_status_updates,
    parse_webhook_event,
)
from wa_integration.persistence.models import (
    MessageDirection,
    MessageStatus,
    WhatsAppAccount,
    WhatsAppConversation,
    WhatsAppMessage,
)
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.policy.engine import AutoResponsePolicyEngine
from wa_integration.policy.service import PolicyService
from wa_integration.reconciler.service import ConnectionReconciler
from wa_integration.service.messaging import ENQUEUE_FAILED

logger = logging.getLogger(__name__)


class InboundHandler:
    """
    Handles gateway callbacks.

    Responsibilities:
    - Feed connection.update / qrcode.updated to the reconciler
    - Persist messages.upsert messages and keep conversation counters
    - Apply messages.update delivery statuses
    - Decide on and queue automated replies
    """

    def __init__(
        self,
        db: Session,
        reconciler: ConnectionReconciler,
        queue: DispatchQueue,
        engine: AutoResponsePolicyEngine | None = None,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.reconciler = reconciler
        self.queue = queue
        self.engine = engine
        self.policies = PolicyService(db)

    async def handle_envelope(self, envelope: IntegrationEnvelope) -> dict[str, Any]:
        """
        Process one webhook envelope from the inbound stream.

        Returns:
            Processing result dict
        """
        try:
            event = parse_webhook_event(envelope.payload)
        except ValidationError as e:
            logger.warning(f"Invalid webhook body in {envelope.event_id}: {e.error_count()} errors")
            return {"status": "invalid"}

        account_key = envelope.account_key or event.instance
        if not account_key:
            return {"status": "ignored", "reason": "no_account"}

        if event.event in CONNECTION_EVENTS:
            merge = await self.reconciler.apply_webhook_event(account_key, event, envelope.occurred_at)
            if merge is None:
                return {"status": "ignored", "event": event.event}
            return {"status": "processed", "event": event.event, "outcome": merge.outcome.value}

        if event.event == GatewayEvent.MESSAGES_UPSERT.value:
            return await self.handle_messages_upsert(account_key, event)

        if event.event == GatewayEvent.MESSAGES_UPDATE.value:
            return self.handle_messages_update(event)

        logger.debug(f"Ignoring gateway event {event.event} for {account_key}")
        return {"status": "ignored", "event": event.event}

    # =========================================================================
    # messages.upsert
    # =========================================================================

    async def handle_messages_upsert(self, account_key: str, event: WebhookEvent) -> dict[str, Any]:
        account = self.repo.get_account_by_key(account_key)
        if account is None or account.is_deleted:
            logger.info(f"messages.upsert for unknown account {account_key}, ignoring")
            return {"status": "ignored", "reason": "unknown_account"}

        results = [
            await self.process_inbound_message(account, inbound)
            for inbound in extract_inbound_messages(event)
        ]
        return {"status": "processed", "event": event.event, "messages": results}

    async def process_inbound_message(
        self,
        account: WhatsAppAccount,
        inbound: InboundMessagePayload,
    ) -> dict[str, Any]:
        """Persist one inbound message and run auto-response for it."""
        result: dict[str, Any] = {"message_id": inbound.provider_message_id, "from": inbound.remote_address}

        if self.repo.is_message_processed(inbound.provider_message_id):
            logger.debug(f"Message {inbound.provider_message_id} already processed, skipping")
            result["status"] = "duplicate"
            return result

        conversation, is_new = self.repo.get_or_create_conversation(
            tenant_id=account.tenant_id,
            account_id=account.id,
            remote_address=inbound.remote_address,
            contact_name=inbound.push_name,
        )
        message = self.repo.create_message(
            tenant_id=account.tenant_id,
            conversation_id=conversation.id,
            direction=MessageDirection.INBOUND,
            message_type=inbound.message_type.value,
            content=inbound.text,
            media=inbound.media,
            provider_message_id=inbound.provider_message_id,
            status=MessageStatus.DELIVERED,
            created_at=inbound.timestamp,
        )
        self.repo.update_conversation_last_message(conversation, MessageDirection.INBOUND, inbound.timestamp)

        try:
            self.db.commit()
        except IntegrityError:
            # Another worker stored the same provider message first
            self.db.rollback()
            result["status"] = "duplicate"
            return result

        logger.info(
            f"Inbound message stored: {inbound.provider_message_id}",
            extra={
                "tenant_id": str(account.tenant_id),
                "conversation_id": str(conversation.id),
                "new_conversation": is_new,
            },
        )
        result["status"] = "processed"
        result["auto_response"] = await self._auto_respond(account, conversation, message)
        return result

    async def _auto_respond(
        self,
        account: WhatsAppAccount,
        conversation: WhatsAppConversation,
        message: WhatsAppMessage,
    ) -> str:
        """Run the policy for an inbound message. Returns what happened."""
        if self.engine is None:
            return "disabled"

        policy = self.policies.get_policy(account.tenant_id)
        if not self.engine.should_respond(message.content, conversation, policy):
            return "not_applicable"

        try:
            reply = await self.engine.generate_response(message, conversation, policy)
        except QuotaExceeded as e:
            self.repo.set_message_automation(
                message,
                {"skipped": "quota_exceeded", "quota": e.quota, "used": e.used, "limit": e.limit},
            )
            self.db.commit()
            logger.info(
                f"Auto-response skipped, quota {e.quota} exhausted",
                extra={"tenant_id": str(account.tenant_id), "conversation_id": str(conversation.id)},
            )
            return "quota_exceeded"

        if reply is None:
            self.repo.set_message_automation(message, {"skipped": "generation_failed"})
            self.db.commit()
            return "generation_failed"

        outbound = self.repo.create_message(
            tenant_id=account.tenant_id,
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            message_type="text",
            content=reply.text,
            status=MessageStatus.PENDING,
            automation=reply.automation_record(),
        )
        self.repo.set_message_automation(message, {"replied": True, "reply_id": str(outbound.id)})
        self.repo.update_conversation_last_message(conversation, MessageDirection.OUTBOUND)
        self.db.commit()

        try:
            self.queue.enqueue_single(
                account.tenant_id,
                account.id,
                conversation.remote_address,
                reply.text,
                message_id=outbound.id,
                delay_ms=reply.delay_ms,
            )
        except redis.RedisError as e:
            self.repo.update_message_status(
                outbound,
                MessageStatus.FAILED,
                error_code=ENQUEUE_FAILED,
                error_message=str(e),
            )
            self.db.commit()
            logger.error(
                f"Auto-response could not be queued: {e}",
                extra={"tenant_id": str(account.tenant_id), "conversation_id": str(conversation.id)},
            )
            return "enqueue_failed"
        return "replied"

    # =========================================================================
    # messages.update
    # =========================================================================

    def handle_messages_update(self, event: WebhookEvent) -> dict[str, Any]:
        updated = 0
        for update in extract_status_updates(event):
            message = self.repo.get_message_by_provider_id(update.provider_message_id)
            if message is None:
                continue
            if self.repo.update_message_status(message, MessageStatus(update.status)):
                updated += 1
        self.db.commit()
        return {"status": "processed", "event": event.event, "updated": updated}
