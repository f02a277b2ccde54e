"""
Integration Payload Models

Pydantic models for webhook envelopes, parsed inbound data and the
application-facing send requests.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MessageType(str, Enum):
    """Types of WhatsApp messages."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    LOCATION = "location"
    STICKER = "sticker"
    UNKNOWN = "unknown"


class WebhookEvent(BaseModel):
    """
    Envelope posted by the gateway to the webhook route.

    Only `event` is required; the rest is validated by the auth gate and
    event handlers.
    """

    model_config = ConfigDict(extra="allow")

    event: str = Field(..., description="Gateway event name")
    instance: str | None = Field(None, description="Account key the event belongs to")
    data: Any = Field(default_factory=dict, description="Event-specific data")
    apikey: str | None = Field(None, description="Credential sent by the gateway")
    server_url: str | None = Field(None, description="Gateway base URL")
    date_time: str | None = Field(None, description="Gateway timestamp")
    sender: str | None = Field(None, description="Owner JID of the sending account")


class InboundMessagePayload(BaseModel):
    """A message received from a counterpart, parsed from messages.upsert."""

    provider_message_id: str = Field(..., description="Gateway message ID")
    remote_address: str = Field(..., description="Counterpart address (no JID suffix)")
    push_name: str | None = Field(None, description="Counterpart profile name")
    message_type: MessageType = Field(MessageType.TEXT)
    text: str = Field("", description="Text content or a media placeholder")
    media: dict[str, Any] | None = Field(None, description="Media descriptor")
    timestamp: datetime | None = Field(None, description="Gateway message timestamp")


class DeliveryStatusPayload(BaseModel):
    """Delivery status change parsed from messages.update."""

    provider_message_id: str
    status: str = Field(..., description="sent, delivered, read or failed")
    remote_address: str | None = None


class SendMessageRequest(BaseModel):
    """Application request to send one text message."""

    to: str = Field(..., min_length=5, description="Recipient address")
    text: str = Field(..., min_length=1, max_length=4096)

    @field_validator("to")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        digits = "".join(ch for ch in value if ch.isdigit())
        if len(digits) < 5:
            raise ValueError("recipient must contain at least 5 digits")
        return digits


class BulkSendRequest(BaseModel):
    """Application request to send the same text to many recipients."""

    recipients: list[str] = Field(..., min_length=1)
    text: str = Field(..., min_length=1, max_length=4096)
    delay_ms: int | None = Field(None, gt=0, description="Spacing between recipients")

    @field_validator("recipients")
    @classmethod
    def _digits_only(cls, value: list[str]) -> list[str]:
        cleaned = ["".join(ch for ch in item if ch.isdigit()) for item in value]
        if any(len(item) < 5 for item in cleaned):
            raise ValueError("every recipient must contain at least 5 digits")
        return cleaned


class ScheduleSendRequest(SendMessageRequest):
    """Application request to send a message at a future time."""

    send_at: datetime


class AccountCreateRequest(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=255)


class DispatchAccepted(BaseModel):
    """Response for an accepted send request."""

    job_id: UUID
    message_id: UUID | None = None
    not_before: datetime
