"""
Integration Persistence

SQLAlchemy models, repository and secret encryption for the integration tables.
"""

from wa_integration.persistence.models import (
    AutoResponsePolicy,
    ConversationStatus,
    MessageDirection,
    MessageStatus,
    WhatsAppAccount,
    WhatsAppBase,
    WhatsAppConversation,
    WhatsAppMessage,
)
from wa_integration.persistence.repo import WhatsAppRepository, can_advance_status
from wa_integration.persistence.secrets import (
    SecretDecryptionError,
    decrypt_secret,
    encrypt_secret,
)

__all__ = [
    "AutoResponsePolicy",
    "ConversationStatus",
    "MessageDirection",
    "MessageStatus",
    "WhatsAppAccount",
    "WhatsAppBase",
    "WhatsAppConversation",
    "WhatsAppMessage",
    "WhatsAppRepository",
    "can_advance_status",
    "SecretDecryptionError",
    "decrypt_secret",
    "encrypt_secret",
]
