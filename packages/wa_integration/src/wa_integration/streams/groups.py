"""
Redis Stream Configuration

Stream names, consumer groups, and setup utilities.
"""

import logging
from dataclasses import dataclass

import redis

from wacore.redis import ensure_stream_group

logger = logging.getLogger(__name__)

# Stream names
INBOUND_STREAM = "wa:webhook:inbound"  # Authenticated gateway callbacks
DISPATCH_STREAM = "wa:dispatch:ready"  # Dispatch jobs due for execution
DLQ_STREAM = "wa:dispatch:dlq"  # Dead-lettered jobs (audit trail)

# Consumer group
INTEGRATION_GROUP = "wa-integration"


@dataclass
class StreamConfig:
    """Configuration for a stream and its consumer group."""

    stream_name: str
    group_name: str
    max_len: int = 100000
    start_id: str = "0"  # "0" = all history, "$" = new only


STREAM_CONFIGS = [
    StreamConfig(INBOUND_STREAM, INTEGRATION_GROUP),
    StreamConfig(DISPATCH_STREAM, INTEGRATION_GROUP),
    StreamConfig(DLQ_STREAM, INTEGRATION_GROUP),
]


def ensure_integration_streams(client: redis.Redis) -> None:
    """
    Ensure all integration streams and consumer groups exist.

    Called on startup by the webhook and worker services.
    """
    for config in STREAM_CONFIGS:
        if ensure_stream_group(client, config.stream_name, config.group_name, config.start_id):
            logger.info(f"Created consumer group '{config.group_name}' for stream '{config.stream_name}'")


def get_pending_count(
    client: redis.Redis,
    stream_name: str,
    group_name: str = INTEGRATION_GROUP,
) -> int:
    """Get count of pending (unacknowledged) entries in a group."""
    try:
        info = client.xpending(stream_name, group_name)
        return info.get("pending", 0) if info else 0
    except redis.ResponseError:
        return 0
