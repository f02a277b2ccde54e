"""
Integration Service Layer

Application-facing operations and the inbound webhook handler.
"""

from wa_integration.service.accounts import AccountService, ConnectionStatus, account_to_dict
from wa_integration.service.inbound_handler import InboundHandler
from wa_integration.service.messaging import MessagingService

__all__ = [
    "AccountService",
    "ConnectionStatus",
    "account_to_dict",
    "InboundHandler",
    "MessagingService",
]
