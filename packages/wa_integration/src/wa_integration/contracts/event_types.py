"""
Integration Event Types

Gateway webhook event names and the internal events carried on Redis Streams.
"""

from enum import Enum


class GatewayEvent(str, Enum):
    """
    Webhook events emitted by the gateway that the integration acts on.

    Any other event name is accepted and ignored so new gateway events never
    cause rejections.
    """

    CONNECTION_UPDATE = "connection.update"
    QRCODE_UPDATED = "qrcode.updated"
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"

    def __str__(self) -> str:
        return self.value


class IntegrationEventType(str, Enum):
    """Events published on the integration's own streams."""

    WEBHOOK_RECEIVED = "wa_webhook_received"
    DISPATCH_READY = "wa_dispatch_ready"
    DISPATCH_DEAD_LETTERED = "wa_dispatch_dead_lettered"

    def __str__(self) -> str:
        return self.value


CONNECTION_EVENTS = {GatewayEvent.CONNECTION_UPDATE.value, GatewayEvent.QRCODE_UPDATED.value}


def normalize_event_name(raw: str | None) -> str:
    """
    Normalize a gateway event name.

    The gateway sends "messages.upsert" by default and "MESSAGES_UPSERT" when
    events are posted to per-event URLs.
    """
    if not raw:
        return ""
    return raw.strip().lower().replace("_", ".")
