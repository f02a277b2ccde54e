"""
Gateway Webhook Parsing

Helpers that turn Evolution API webhook bodies into typed payloads.
Authentication is handled separately by wa_integration.security.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from wa_integration.contracts.event_types import GatewayEvent, normalize_event_name
from wa_integration.contracts.payloads import (
    DeliveryStatusPayload,
    InboundMessagePayload,
    MessageType,
    WebhookEvent,
)
from wa_integration.gateway.base import strip_jid

logger = logging.getLogger(__name__)

# messages.update status values (v2 names and v1 numeric codes)
STATUS_MAP = {
    "PENDING": "pending",
    "SERVER_ACK": "sent",
    "SENT": "sent",
    "DELIVERY_ACK": "delivered",
    "DELIVERED": "delivered",
    "READ": "read",
    "PLAYED": "read",
    "ERROR": "failed",
    "FAILED": "failed",
    "1": "pending",
    "2": "sent",
    "3": "delivered",
    "4": "read",
    "5": "read",
}


def extract_account_key(payload: dict[str, Any]) -> str | None:
    """
    Extract the account key (instance name) from a webhook body.

    Evolution sends it as a string; some versions nest it under "instanceName".
    """
    instance = payload.get("instance")
    if isinstance(instance, dict):
        instance = instance.get("instanceName")
    return instance or None


def parse_webhook_event(payload: dict[str, Any]) -> WebhookEvent:
    """Validate a webhook body and normalize the event name."""
    event = WebhookEvent.model_validate({**payload, "instance": extract_account_key(payload)})
    event.event = normalize_event_name(event.event)
    return event


def _as_list(data: Any) -> list[dict[str, Any]]:
    """messages.* events carry a dict, a list, or {"messages": [...]}."""
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        if isinstance(data.get("messages"), list):
            return [item for item in data["messages"] if isinstance(item, dict)]
        return [data]
    return []


def _extract_content(message: dict[str, Any]) -> tuple[MessageType, str, dict[str, Any] | None]:
    """Pull text, type and a media descriptor out of a WhatsApp message body."""
    if message.get("conversation"):
        return MessageType.TEXT, message["conversation"], None

    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return MessageType.TEXT, extended["text"], None

    if "imageMessage" in message:
        image = message["imageMessage"] or {}
        media = {"mimetype": image.get("mimetype"), "url": image.get("url")}
        return MessageType.IMAGE, image.get("caption") or "[Image]", media

    if "audioMessage" in message:
        audio = message["audioMessage"] or {}
        media = {"mimetype": audio.get("mimetype"), "seconds": audio.get("seconds"), "ptt": audio.get("ptt")}
        return MessageType.AUDIO, "[Audio]", media

    if "videoMessage" in message:
        video = message["videoMessage"] or {}
        media = {"mimetype": video.get("mimetype"), "seconds": video.get("seconds")}
        return MessageType.VIDEO, video.get("caption") or "[Video]", media

    if "documentMessage" in message:
        document = message["documentMessage"] or {}
        media = {"mimetype": document.get("mimetype"), "file_name": document.get("fileName")}
        return MessageType.DOCUMENT, document.get("fileName") or "[Document]", media

    if "locationMessage" in message:
        location = message["locationMessage"] or {}
        media = {
            "latitude": location.get("degreesLatitude"),
            "longitude": location.get("degreesLongitude"),
            "address": location.get("address"),
        }
        return MessageType.LOCATION, location.get("name") or "[Location]", media

    if "stickerMessage" in message:
        return MessageType.STICKER, "[Sticker]", None

    return MessageType.UNKNOWN, "", None


def _parse_timestamp(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def extract_inbound_messages(event: WebhookEvent) -> list[InboundMessagePayload]:
    """
    Parse messages.upsert data into inbound message payloads.

    Messages sent by the account itself (fromMe) and group chats are skipped.
    """
    if event.event != GatewayEvent.MESSAGES_UPSERT.value:
        return []

    messages: list[InboundMessagePayload] = []
    for item in _as_list(event.data):
        key = item.get("key") or {}
        if key.get("fromMe"):
            continue

        remote_jid = key.get("remoteJid") or ""
        if remote_jid.endswith("@g.us"):
            continue

        remote = strip_jid(remote_jid)
        if not key.get("id") or not remote:
            logger.debug("Skipping message without id or sender", extra={"key": key})
            continue

        message_type, text, media = _extract_content(item.get("message") or {})
        messages.append(
            InboundMessagePayload(
                provider_message_id=key["id"],
                remote_address=remote,
                push_name=item.get("pushName"),
                message_type=message_type,
                text=text,
                media=media,
                timestamp=_parse_timestamp(item.get("messageTimestamp")),
            )
        )

    return messages


def extract_status_updates(event: WebhookEvent) -> list[DeliveryStatusPayload]:
    """Parse messages.update data into delivery status payloads."""
    if event.event != GatewayEvent.MESSAGES_UPDATE.value:
        return []

    updates: list[DeliveryStatusPayload] = []
    for item in _as_list(event.data):
        key = item.get("key") or {}
        message_id = key.get("id") or item.get("keyId") or item.get("messageId")
        raw_status = (item.get("update") or {}).get("status", item.get("status"))
        status = STATUS_MAP.get(str(raw_status).upper()) if raw_status is not None else None

        if not message_id or not status:
            continue

        updates.append(
            DeliveryStatusPayload(
                provider_message_id=message_id,
                status=status,
                remote_address=strip_jid(key.get("remoteJid") or item.get("remoteJid")),
            )
        )

    return updates
