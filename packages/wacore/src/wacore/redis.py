"""
Redis client utilities for wacore.

Provides a lazily initialized Redis client so imports never open connections.
"""

import functools

import redis

from wacore.settings import get_settings


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """
    Get Redis client (cached).

    Responses are decoded to str; every stream field and job record is text.
    """
    url = get_settings().REDIS_URL
    return redis.from_url(url, decode_responses=True)


def ensure_stream_group(
    client: redis.Redis,
    stream_name: str,
    group_name: str,
    start_id: str = "0",
) -> bool:
    """
    Ensure a consumer group exists for a stream.

    Creates the group (and the stream) if missing. Safe to call repeatedly.

    Args:
        client: Redis client
        stream_name: Name of the Redis stream
        group_name: Name of the consumer group
        start_id: ID from which to start reading ("0" = all, "$" = new only)

    Returns:
        True if the group was created, False if it already existed
    """
    try:
        client.xgroup_create(stream_name, group_name, id=start_id, mkstream=True)
        return True
    except redis.ResponseError as e:
        if "BUSYGROUP" in str(e):
            return False
        raise


def ping(client: redis.Redis) -> bool:
    """Health probe used by service health endpoints."""
    try:
        return bool(client.ping())
    except redis.RedisError:
        return False
