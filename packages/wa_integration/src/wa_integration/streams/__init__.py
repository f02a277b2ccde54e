"""
Integration Redis Streams

Producer and consumer for the webhook inbound stream, the dispatch ready
stream and the dispatch DLQ, plus keyed concurrent processing of batches.
"""

from wa_integration.streams.consumer import IntegrationStreamConsumer
from wa_integration.streams.groups import (
    DISPATCH_STREAM,
    DLQ_STREAM,
    INBOUND_STREAM,
    INTEGRATION_GROUP,
    StreamConfig,
    ensure_integration_streams,
    get_pending_count,
)
from wa_integration.streams.producer import IntegrationStreamProducer
from wa_integration.streams.lanes import run_keyed

__all__ = [
    "IntegrationStreamConsumer",
    "IntegrationStreamProducer",
    "DISPATCH_STREAM",
    "DLQ_STREAM",
    "INBOUND_STREAM",
    "INTEGRATION_GROUP",
    "StreamConfig",
    "ensure_integration_streams",
    "get_pending_count",
    "run_keyed",
]
