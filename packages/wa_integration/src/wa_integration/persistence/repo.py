"""
WhatsApp Integration Repository

Repository pattern for the integration's database operations.
Provides CRUD operations and common queries for accounts, conversations,
messages and auto-response policies.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from wacore.clock import utcnow

from wa_integration.gateway.base import ConnectionState
from wa_integration.persistence.models import (
    MESSAGE_STATUS_RANK,
    AutoResponsePolicy,
    ConversationStatus,
    MessageDirection,
    MessageStatus,
    WhatsAppAccount,
    WhatsAppConversation,
    WhatsAppMessage,
)


def can_advance_status(current: str, target: str) -> bool:
    """
    Whether a message may move from `current` to `target`.

    Delivery states only move forward. FAILED ends an attempt from pending or
    sent, and a later attempt may move a failed message to sent or beyond.
    """
    if current == target:
        return False
    if target == MessageStatus.FAILED.value:
        return current in (MessageStatus.PENDING.value, MessageStatus.SENT.value)
    if current == MessageStatus.FAILED.value:
        return MESSAGE_STATUS_RANK[target] >= MESSAGE_STATUS_RANK[MessageStatus.SENT.value]
    return MESSAGE_STATUS_RANK[target] > MESSAGE_STATUS_RANK[current]


class WhatsAppRepository:
    """Repository for integration database operations."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Accounts
    # =========================================================================

    def get_account(self, account_id: UUID, for_update: bool = False) -> WhatsAppAccount | None:
        """Get account by ID (deleted accounts excluded)."""
        query = self.db.query(WhatsAppAccount).filter(
            WhatsAppAccount.id == account_id,
            WhatsAppAccount.deleted_at.is_(None),
        )
        if for_update:
            # Pending changes are flushed, then the row is re-read under the lock
            self.db.flush()
            query = query.with_for_update().populate_existing()
        return query.first()

    def get_account_by_key(self, account_key: str, for_update: bool = False) -> WhatsAppAccount | None:
        """Get account by gateway account key (deleted accounts excluded)."""
        query = self.db.query(WhatsAppAccount).filter(
            WhatsAppAccount.account_key == account_key,
            WhatsAppAccount.deleted_at.is_(None),
        )
        if for_update:
            # Pending changes are flushed, then the row is re-read under the lock
            self.db.flush()
            query = query.with_for_update().populate_existing()
        return query.first()

    def list_accounts(self, tenant_id: UUID) -> list[WhatsAppAccount]:
        """List a tenant's accounts, newest first."""
        return (
            self.db.query(WhatsAppAccount)
            .filter(
                WhatsAppAccount.tenant_id == tenant_id,
                WhatsAppAccount.deleted_at.is_(None),
            )
            .order_by(WhatsAppAccount.created_at.desc())
            .all()
        )

    def list_reconcilable_accounts(self) -> list[WhatsAppAccount]:
        """Accounts the reconciler polls: not deleted and not failed."""
        return (
            self.db.query(WhatsAppAccount)
            .filter(
                WhatsAppAccount.deleted_at.is_(None),
                WhatsAppAccount.status != ConnectionState.FAILED.value,
            )
            .order_by(WhatsAppAccount.last_polled_at.asc())
            .all()
        )

    def create_account(
        self,
        tenant_id: UUID,
        account_key: str,
        display_name: str,
    ) -> WhatsAppAccount:
        """Create a new local account row (before gateway provisioning)."""
        account = WhatsAppAccount(
            tenant_id=tenant_id,
            account_key=account_key,
            display_name=display_name,
            status=ConnectionState.DISCONNECTED.value,
            orphan_strikes=0,
            needs_attention=False,
        )
        self.db.add(account)
        return account

    def soft_delete_account(self, account: WhatsAppAccount) -> None:
        """Mark an account deleted and drop its pairing state."""
        account.deleted_at = utcnow()
        account.status = ConnectionState.DISCONNECTED.value
        account.pairing_payload = None

    def mark_account_failed(self, account: WhatsAppAccount, reason: str) -> None:
        """Move an account to FAILED (missing or unusable credential)."""
        account.status = ConnectionState.FAILED.value
        account.pairing_payload = None
        account.provisioning_error = reason
        account.state_source = "local"
        account.state_observed_at = utcnow()

    # =========================================================================
    # Conversations
    # =========================================================================

    def get_conversation(self, account_id: UUID, remote_address: str) -> WhatsAppConversation | None:
        """Get conversation by account and counterpart address."""
        return (
            self.db.query(WhatsAppConversation)
            .filter(
                WhatsAppConversation.account_id == account_id,
                WhatsAppConversation.remote_address == remote_address,
            )
            .first()
        )

    def get_conversation_by_id(self, conversation_id: UUID) -> WhatsAppConversation | None:
        """Get conversation by ID."""
        return (
            self.db.query(WhatsAppConversation)
            .filter(WhatsAppConversation.id == conversation_id)
            .first()
        )

    def get_or_create_conversation(
        self,
        tenant_id: UUID,
        account_id: UUID,
        remote_address: str,
        contact_name: str | None = None,
    ) -> tuple[WhatsAppConversation, bool]:
        """
        Get existing conversation or create a new one.

        Returns:
            Tuple of (conversation, created) where created is True if new.
        """
        conversation = self.get_conversation(account_id, remote_address)
        if conversation:
            if contact_name and conversation.contact_name != contact_name:
                conversation.contact_name = contact_name
            return conversation, False

        conversation = WhatsAppConversation(
            tenant_id=tenant_id,
            account_id=account_id,
            remote_address=remote_address,
            contact_name=contact_name,
            status=ConversationStatus.ACTIVE.value,
            unread_count=0,
        )
        self.db.add(conversation)
        self.db.flush()
        return conversation, True

    def update_conversation_last_message(
        self,
        conversation: WhatsAppConversation,
        direction: MessageDirection,
        timestamp: datetime | None = None,
    ) -> None:
        """Update conversation timestamps and unread counter after a message."""
        now = timestamp or utcnow()
        conversation.last_message_at = now
        conversation.updated_at = now

        if direction == MessageDirection.INBOUND:
            conversation.unread_count = (conversation.unread_count or 0) + 1
            if conversation.status == ConversationStatus.ARCHIVED.value:
                conversation.status = ConversationStatus.ACTIVE.value

    def mark_conversation_read(self, conversation: WhatsAppConversation) -> None:
        conversation.unread_count = 0

    def list_conversations(
        self,
        account_id: UUID,
        status: ConversationStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WhatsAppConversation]:
        """List conversations for an account."""
        query = self.db.query(WhatsAppConversation).filter(
            WhatsAppConversation.account_id == account_id
        )

        if status:
            query = query.filter(WhatsAppConversation.status == status.value)

        return (
            query.order_by(WhatsAppConversation.last_message_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    # =========================================================================
    # Messages
    # =========================================================================

    def get_message(self, message_id: UUID) -> WhatsAppMessage | None:
        """Get message by ID."""
        return self.db.query(WhatsAppMessage).filter(WhatsAppMessage.id == message_id).first()

    def get_message_by_provider_id(self, provider_message_id: str) -> WhatsAppMessage | None:
        """Get message by provider message ID (for idempotency)."""
        return (
            self.db.query(WhatsAppMessage)
            .filter(WhatsAppMessage.provider_message_id == provider_message_id)
            .first()
        )

    def is_message_processed(self, provider_message_id: str) -> bool:
        """Check if a message has already been stored (idempotency)."""
        result = self.db.execute(
            text("SELECT 1 FROM whatsapp_messages WHERE provider_message_id = :id LIMIT 1"),
            {"id": provider_message_id},
        )
        return result.fetchone() is not None

    def create_message(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        direction: MessageDirection,
        message_type: str,
        content: str | None = None,
        media: dict[str, Any] | None = None,
        provider_message_id: str | None = None,
        status: MessageStatus = MessageStatus.PENDING,
        automation: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> WhatsAppMessage:
        """Create a new message record."""
        message = WhatsAppMessage(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            direction=direction.value,
            message_type=message_type,
            content=content,
            media=media,
            provider_message_id=provider_message_id,
            status=status.value,
            automation=automation,
        )
        if created_at:
            message.created_at = created_at
        self.db.add(message)
        self.db.flush()
        return message

    def update_message_status(
        self,
        message: WhatsAppMessage,
        status: MessageStatus,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Move a message to a new status if the transition is allowed.

        Returns:
            True if the status changed
        """
        if not can_advance_status(message.status, status.value):
            return False

        message.status = status.value
        message.status_updated_at = utcnow()
        if status == MessageStatus.FAILED:
            message.error_code = error_code
            message.error_message = error_message
        else:
            message.error_code = None
            message.error_message = None
        return True

    def mark_message_sent(self, message: WhatsAppMessage, provider_message_id: str | None) -> bool:
        """Record the gateway acknowledgement of an outbound message."""
        if provider_message_id and not message.provider_message_id:
            message.provider_message_id = provider_message_id
        return self.update_message_status(message, MessageStatus.SENT)

    def set_message_automation(self, message: WhatsAppMessage, record: dict[str, Any]) -> None:
        """Attach an auto-response record (reply metadata or skip reason)."""
        message.automation = {**(message.automation or {}), **record}

    def get_recent_messages(
        self,
        conversation_id: UUID,
        limit: int = 20,
        exclude_id: UUID | None = None,
    ) -> list[WhatsAppMessage]:
        """Get recent messages for a conversation, newest first."""
        query = self.db.query(WhatsAppMessage).filter(
            WhatsAppMessage.conversation_id == conversation_id
        )
        if exclude_id is not None:
            query = query.filter(WhatsAppMessage.id != exclude_id)
        return query.order_by(WhatsAppMessage.created_at.desc()).limit(limit).all()

    # =========================================================================
    # Auto-response policies
    # =========================================================================

    def get_policy(self, tenant_id: UUID, for_update: bool = False) -> AutoResponsePolicy | None:
        """Get a tenant's auto-response policy."""
        query = self.db.query(AutoResponsePolicy).filter(AutoResponsePolicy.tenant_id == tenant_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def create_policy(self, tenant_id: UUID, **values: Any) -> AutoResponsePolicy:
        """Create a tenant's policy row with the given column values."""
        policy = AutoResponsePolicy(tenant_id=tenant_id, **values)
        self.db.add(policy)
        self.db.flush()
        return policy
