"""
Integration Stream Consumer

Consumes envelopes from Redis Streams using XREADGROUP.
"""

import logging
from typing import Any

import redis

from wa_integration.contracts.envelope import IntegrationEnvelope
from wa_integration.streams.groups import INTEGRATION_GROUP

logger = logging.getLogger(__name__)


class IntegrationStreamConsumer:
    """
    Consumer for reading integration events from Redis Streams.

    Uses XREADGROUP for consumer group support and reliable delivery.
    Entries that are not acknowledged stay in the pending-entries list and
    are picked up again by `reclaim_pending`.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        consumer_name: str,
        group_name: str = INTEGRATION_GROUP,
    ):
        self.redis = redis_client
        self.consumer_name = consumer_name
        self.group_name = group_name

    def _parse_entries(
        self,
        stream_name: str,
        entries: list[tuple[str, dict[str, str]]],
    ) -> list[tuple[str, IntegrationEnvelope]]:
        messages = []
        for msg_id, data in entries:
            if not data:
                # Entry trimmed from the stream while pending
                self.ack(stream_name, msg_id)
                continue
            try:
                messages.append((msg_id, IntegrationEnvelope.from_stream_message(msg_id, data)))
            except (KeyError, ValueError) as e:
                logger.error(f"Failed to parse message {msg_id}: {e}")
                # ACK invalid messages to prevent blocking
                self.ack(stream_name, msg_id)
        return messages

    def read_messages(
        self,
        stream_name: str,
        count: int = 10,
        block_ms: int = 5000,
    ) -> list[tuple[str, IntegrationEnvelope]]:
        """
        Read new messages from a stream.

        Args:
            stream_name: Name of the stream to read from
            count: Maximum messages to read
            block_ms: Milliseconds to block waiting for messages (None = no block)

        Returns:
            List of (message_id, envelope) tuples
        """
        try:
            result = self.redis.xreadgroup(
                self.group_name,
                self.consumer_name,
                {stream_name: ">"},
                count=count,
                block=block_ms,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                logger.error(f"Consumer group {self.group_name} does not exist for {stream_name}")
            raise

        if not result:
            return []

        messages = []
        for _stream, entries in result:
            messages.extend(self._parse_entries(stream_name, entries))
        return messages

    def ack(self, stream_name: str, message_id: str) -> int:
        """
        Acknowledge a message as processed.

        Returns:
            Number of messages acknowledged (0 or 1)
        """
        return self.redis.xack(stream_name, self.group_name, message_id)

    def get_pending(
        self,
        stream_name: str,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[dict[str, Any]]:
        """
        Get pending messages that have been idle too long.

        Returns:
            List of pending message info dicts
        """
        try:
            pending_info = self.redis.xpending(stream_name, self.group_name)
            if not pending_info or pending_info.get("pending", 0) == 0:
                return []

            pending_range = self.redis.xpending_range(
                stream_name,
                self.group_name,
                min="-",
                max="+",
                count=count,
            )
        except redis.ResponseError as e:
            logger.error(f"Failed to read pending entries for {stream_name}: {e}")
            return []

        return [
            entry
            for entry in pending_range
            if entry.get("time_since_delivered", 0) >= min_idle_ms
        ]

    def claim_messages(
        self,
        stream_name: str,
        message_ids: list[str],
        min_idle_ms: int = 60000,
    ) -> list[tuple[str, IntegrationEnvelope]]:
        """
        Claim pending messages from other (possibly dead) consumers.

        Returns:
            List of (message_id, envelope) tuples for claimed messages
        """
        if not message_ids:
            return []

        try:
            result = self.redis.xclaim(
                stream_name,
                self.group_name,
                self.consumer_name,
                min_idle_ms,
                message_ids,
            )
        except redis.ResponseError as e:
            logger.error(f"Failed to claim messages: {e}")
            return []

        return self._parse_entries(stream_name, result)

    def reclaim_pending(
        self,
        stream_name: str,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[tuple[str, IntegrationEnvelope]]:
        """
        Reclaim and return pending messages that have been idle.

        Combines get_pending and claim_messages.
        """
        pending = self.get_pending(stream_name, min_idle_ms, count)
        if not pending:
            return []

        message_ids = [p["message_id"] for p in pending]
        return self.claim_messages(stream_name, message_ids, min_idle_ms)
