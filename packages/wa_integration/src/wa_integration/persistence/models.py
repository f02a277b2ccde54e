"""
WhatsApp Integration Database Models

Tables owned by the integration core.

Tables:
- whatsapp_accounts: A tenant's connection to the gateway (one gateway instance)
- whatsapp_conversations: One thread per (account, counterpart address)
- whatsapp_messages: Inbound and outbound messages with delivery status
- whatsapp_auto_response_policies: Per-tenant auto-response configuration and usage
"""

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from wacore.clock import utcnow

from wa_integration.gateway.base import ConnectionState

WhatsAppBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Native UUID on PostgreSQL, CHAR(32) elsewhere so SQLite never coerces ids to numbers
UUIDType = Uuid(as_uuid=True)


class ConversationStatus(str, Enum):
    """Status of a conversation."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    CLOSED = "closed"


class MessageDirection(str, Enum):
    """Direction of a message."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Forward-only ordering of delivery states. FAILED sits outside the order.
MESSAGE_STATUS_RANK = {
    MessageStatus.PENDING.value: 0,
    MessageStatus.SENT.value: 1,
    MessageStatus.DELIVERED.value: 2,
    MessageStatus.READ.value: 3,
}


class WhatsAppModelMixin:
    """Common fields for all integration models."""

    id = Column(UUIDType, primary_key=True, default=uuid4)
    tenant_id = Column(UUIDType, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class WhatsAppAccount(WhatsAppBase, WhatsAppModelMixin):
    """
    A tenant's WhatsApp connection, addressed on the gateway by `account_key`.

    Invariants:
    - status == connected implies phone_identity is set and pairing_payload is null
    - status == failed is only left through an explicit reconnect
    """

    __tablename__ = "whatsapp_accounts"

    account_key = Column(String(100), nullable=False)  # Gateway instance name
    display_name = Column(String(255), nullable=False)
    secret_encrypted = Column(Text, nullable=True)  # Fernet token of the gateway-issued secret
    status = Column(String(20), nullable=False, default=ConnectionState.DISCONNECTED.value)
    phone_identity = Column(String(32), nullable=True)
    profile_name = Column(String(255), nullable=True)
    pairing_payload = Column(Text, nullable=True)  # QR code (base64 or raw)
    last_connected_at = Column(DateTime(timezone=True), nullable=True)

    # Reconciliation bookkeeping
    state_observed_at = Column(DateTime(timezone=True), nullable=True)
    state_source = Column(String(10), nullable=True)  # poll, webhook, local
    orphan_strikes = Column(Integer, nullable=False, default=0)
    needs_attention = Column(Boolean, nullable=False, default=False)
    last_polled_at = Column(DateTime(timezone=True), nullable=True)
    last_webhook_at = Column(DateTime(timezone=True), nullable=True)

    provisioning_error = Column(Text, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("account_key", name="uq_whatsapp_accounts_account_key"),
        Index("idx_whatsapp_accounts_tenant_status", "tenant_id", "status"),
    )

    @property
    def connection_state(self) -> ConnectionState:
        return ConnectionState(self.status)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class WhatsAppConversation(WhatsAppBase, WhatsAppModelMixin):
    """
    A thread with one counterpart on one account.

    Created lazily on the first inbound or outbound message.
    """

    __tablename__ = "whatsapp_conversations"

    account_id = Column(UUIDType, nullable=False, index=True)
    remote_address = Column(String(32), nullable=False)  # Digits, no JID suffix
    contact_name = Column(String(255), nullable=True)  # From WhatsApp profile (pushName)
    status = Column(String(20), nullable=False, default=ConversationStatus.ACTIVE.value)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    last_automated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("account_id", "remote_address", name="uq_whatsapp_conversations_account_remote"),
        Index("idx_whatsapp_conversations_tenant_last_message", "tenant_id", "last_message_at"),
    )


class WhatsAppMessage(WhatsAppBase, WhatsAppModelMixin):
    """
    Inbound and outbound messages.

    Provider message IDs are used for idempotency. `automation` holds the
    auto-response record: model, tokens and prompt fingerprint for generated
    replies, or a skip reason on inbound messages that were not answered.
    """

    __tablename__ = "whatsapp_messages"

    conversation_id = Column(UUIDType, nullable=False, index=True)
    direction = Column(String(10), nullable=False)
    message_type = Column(String(20), nullable=False, default="text")
    content = Column(Text, nullable=True)
    media = Column(JSONType, nullable=True)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    status_updated_at = Column(DateTime(timezone=True), nullable=True)
    provider_message_id = Column(String(100), nullable=True)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    automation = Column(JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_message_id", name="uq_whatsapp_messages_provider_id"),
        Index("idx_whatsapp_messages_tenant_status", "tenant_id", "status"),
        Index("idx_whatsapp_messages_conversation_created", "conversation_id", "created_at"),
    )


class AutoResponsePolicy(WhatsAppBase, WhatsAppModelMixin):
    """
    Per-tenant auto-response policy.

    Scalar settings are columns; structured settings (business hours, keywords,
    generation settings, quotas) are JSON documents validated by
    wa_integration.policy.config.TenantPolicy.
    """

    __tablename__ = "whatsapp_auto_response_policies"

    enabled = Column(Boolean, nullable=False, default=False)
    response_mode = Column(String(20), nullable=False, default="always")
    personality = Column(String(20), nullable=False, default="professional")
    model = Column(String(50), nullable=False, default="gpt-3.5-turbo")
    system_prompt = Column(Text, nullable=True)
    welcome_message = Column(Text, nullable=True)
    business_hours = Column(JSONType, nullable=False, default=dict)
    keywords = Column(JSONType, nullable=False, default=list)
    blocked_phrases = Column(JSONType, nullable=False, default=list)
    generation = Column(JSONType, nullable=False, default=dict)
    quotas = Column(JSONType, nullable=False, default=dict)

    # Usage counters, owned by the usage ledger
    tokens_today = Column(Integer, nullable=False, default=0)
    tokens_this_month = Column(Integer, nullable=False, default=0)
    conversations_today = Column(Integer, nullable=False, default=0)
    usage_reset_at = Column(DateTime(timezone=True), nullable=True)
    last_response_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("tenant_id", name="uq_whatsapp_policies_tenant"),)
