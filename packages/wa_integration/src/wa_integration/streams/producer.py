"""
Integration Stream Producer

Publishes envelopes to the integration's Redis Streams.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

import redis

from wa_integration.contracts.envelope import IntegrationEnvelope
from wa_integration.contracts.event_types import IntegrationEventType
from wa_integration.streams.groups import DISPATCH_STREAM, DLQ_STREAM, INBOUND_STREAM

logger = logging.getLogger(__name__)


class IntegrationStreamProducer:
    """
    Producer for publishing integration events to Redis Streams.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        max_len: int = 100000,
    ):
        self.redis = redis_client
        self.max_len = max_len

    def publish_webhook(
        self,
        account_key: str,
        payload: dict[str, Any],
        received_at: datetime,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        Publish an authenticated webhook body.

        Called by the webhook service after the auth gate accepted the request.
        `received_at` becomes the observation time for connection events.

        Returns:
            Stream message ID
        """
        envelope = IntegrationEnvelope.create(
            event_type=IntegrationEventType.WEBHOOK_RECEIVED.value,
            payload=payload,
            account_key=account_key,
            correlation_id=correlation_id,
            metadata=metadata,
            occurred_at=received_at,
        )
        return self._publish(INBOUND_STREAM, envelope)

    def publish_dispatch_ready(self, job_id: UUID, tenant_id: UUID) -> str:
        """
        Announce a dispatch job that is due for execution.

        Returns:
            Stream message ID
        """
        envelope = IntegrationEnvelope.create(
            event_type=IntegrationEventType.DISPATCH_READY.value,
            payload={"job_id": str(job_id)},
            tenant_id=tenant_id,
            correlation_id=str(job_id),
        )
        return self._publish(DISPATCH_STREAM, envelope)

    def publish_dead_letter(
        self,
        job: dict[str, Any],
        error: str,
        tenant_id: UUID,
    ) -> str:
        """
        Record a dead-lettered job on the DLQ stream.

        Returns:
            Stream message ID
        """
        envelope = IntegrationEnvelope.create(
            event_type=IntegrationEventType.DISPATCH_DEAD_LETTERED.value,
            payload={"job": job, "error": error},
            tenant_id=tenant_id,
            correlation_id=job.get("job_id"),
        )
        return self._publish(DLQ_STREAM, envelope)

    def _publish(self, stream_name: str, envelope: IntegrationEnvelope) -> str:
        """
        Publish an envelope to a stream.

        Returns:
            Stream message ID
        """
        msg_id = self.redis.xadd(
            stream_name,
            envelope.to_stream_data(),
            maxlen=self.max_len,
            approximate=True,
        )

        logger.debug(
            f"Published to {stream_name}",
            extra={
                "stream": stream_name,
                "event_type": envelope.event_type,
                "event_id": str(envelope.event_id),
                "msg_id": msg_id,
            },
        )

        return msg_id
