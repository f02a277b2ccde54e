"""
Integration Contracts

Event types, payloads and the stream envelope.
"""

from wa_integration.contracts.envelope import IntegrationEnvelope
from wa_integration.contracts.event_types import (
    GatewayEvent,
    IntegrationEventType,
    normalize_event_name,
)
from wa_integration.contracts.payloads import (
    BulkSendRequest,
    DeliveryStatusPayload,
    InboundMessagePayload,
    MessageType,
    ScheduleSendRequest,
    SendMessageRequest,
    WebhookEvent,
)

__all__ = [
    "IntegrationEnvelope",
    "GatewayEvent",
    "IntegrationEventType",
    "normalize_event_name",
    "BulkSendRequest",
    "DeliveryStatusPayload",
    "InboundMessagePayload",
    "MessageType",
    "ScheduleSendRequest",
    "SendMessageRequest",
    "WebhookEvent",
]
