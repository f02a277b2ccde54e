"""
Integration Event Envelope

Standard wrapper for events carried on the integration's Redis Streams.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from wacore.clock import as_utc, utcnow


@dataclass
class IntegrationEnvelope:
    """
    Event envelope for the integration streams.

    Used:
    - By the webhook service to publish authenticated gateway callbacks
    - By the worker to consume them
    - By the dispatch queue to announce dead-lettered jobs

    Attributes:
        event_id: Unique identifier for this event instance
        event_type: IntegrationEventType value
        occurred_at: When the event was received or produced (UTC)
        payload: Event-specific data
        account_key: Gateway account the event concerns, if known
        tenant_id: Owning tenant, if already resolved
        version: Envelope contract version
        correlation_id: Optional correlation ID for tracing
        metadata: Additional metadata (source, stream id, etc.)
    """

    event_id: UUID
    event_type: str
    occurred_at: datetime
    payload: dict[str, Any]
    account_key: str | None = None
    tenant_id: UUID | None = None
    version: int = 1
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        payload: dict[str, Any],
        account_key: str | None = None,
        tenant_id: UUID | None = None,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> "IntegrationEnvelope":
        """Create a new envelope with auto-generated event_id and timestamp."""
        return cls(
            event_id=uuid4(),
            event_type=event_type,
            occurred_at=occurred_at or utcnow(),
            payload=payload,
            account_key=account_key,
            tenant_id=tenant_id,
            correlation_id=correlation_id,
            metadata=metadata or {},
        )

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "IntegrationEnvelope":
        """Parse a Redis Stream message into an envelope."""
        payload = json.loads(data.get("payload", "{}"))
        metadata = json.loads(data.get("metadata", "{}"))
        metadata["stream_msg_id"] = msg_id

        return cls(
            event_id=UUID(data["event_id"]),
            event_type=data["event_type"],
            occurred_at=(
                as_utc(datetime.fromisoformat(data["occurred_at"]))
                if data.get("occurred_at")
                else utcnow()
            ),
            payload=payload,
            account_key=data.get("account_key") or None,
            tenant_id=UUID(data["tenant_id"]) if data.get("tenant_id") else None,
            version=int(data.get("version", "1")),
            correlation_id=data.get("correlation_id") or None,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "account_key": self.account_key,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "version": self.version,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "metadata": self.metadata,
        }

    def to_stream_data(self) -> dict[str, str]:
        """Convert to a dictionary suitable for a Redis Stream (all string values)."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "account_key": self.account_key or "",
            "tenant_id": str(self.tenant_id) if self.tenant_id else "",
            "version": str(self.version),
            "payload": json.dumps(self.payload, default=str),
            "correlation_id": self.correlation_id or "",
            "metadata": json.dumps(self.metadata, default=str),
        }
