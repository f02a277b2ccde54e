"""
Messaging Gateway

Client implementations for the external WhatsApp gateway.
Supports Evolution API (production) and Stub (development).
"""

from wacore.settings import Settings, get_settings

from wa_integration.gateway.base import (
    ConnectionSnapshot,
    ConnectionState,
    GatewayAccount,
    MessagingGateway,
    ProvisionedAccount,
    SendReceipt,
    map_gateway_state,
    strip_jid,
)
from wa_integration.gateway.client import EvolutionGatewayClient
from wa_integration.gateway.stub import StubGateway


def build_gateway(settings: Settings | None = None) -> MessagingGateway:
    """
    Get the configured gateway client.

    Uses GATEWAY_MODE; the stub is returned when Evolution is not configured.
    """
    settings = settings or get_settings()

    if settings.GATEWAY_MODE == "evolution" and settings.EVOLUTION_API_URL:
        return EvolutionGatewayClient(
            api_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    return StubGateway()


__all__ = [
    "ConnectionSnapshot",
    "ConnectionState",
    "GatewayAccount",
    "MessagingGateway",
    "ProvisionedAccount",
    "SendReceipt",
    "map_gateway_state",
    "strip_jid",
    "EvolutionGatewayClient",
    "StubGateway",
    "build_gateway",
]
