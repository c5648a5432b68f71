# common/cache.py
import json
import logging
import os
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

# Bounds every Redis round trip so a dead cache cannot stall requests
REDIS_SOCKET_TIMEOUT_SECONDS = float(os.getenv("REDIS_SOCKET_TIMEOUT_SECONDS", "0.5"))

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client when REDIS_URL is configured and reachable.

    Without Redis every cache call below is a no-op, so the services keep
    working (uncached) when it is absent or down.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    try:
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        client.ping()
    except redis.RedisError as exc:
        logger.warning("Redis at %s unreachable, caching disabled: %s", redis_url, exc)
        return None

    _redis_client = client
    return _redis_client


def get_cached_json(key: str) -> Optional[Any]:
    """Cached value for key, or None on a miss or when Redis fails."""
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(key)
    except redis.RedisError as exc:
        logger.warning("Redis GET %s failed, treating as miss: %s", key, exc)
        return None
    if raw is None:
        return None
    return json.loads(raw)


def set_cached_json(key: str, value: Any, ttl_seconds: int = 60) -> None:
    client = get_redis_client()
    if client is None:
        return

    try:
        client.setex(key, ttl_seconds, json.dumps(value, default=str))
    except redis.RedisError as exc:
        logger.warning("Redis SETEX %s failed, value not cached: %s", key, exc)


def get_generation(name: str) -> Optional[int]:
    """
    Current generation counter for a cache namespace.

    Readers embed it in their keys; writers bump it, so an entry computed
    before a write lands under a generation nobody reads any more. Returns
    None when Redis is unavailable, meaning "do not cache".
    """
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(f"{name}:generation")
    except redis.RedisError as exc:
        logger.warning("Redis generation read for %s failed: %s", name, exc)
        return None
    return int(raw) if raw is not None else 0


def bump_generation(name: str) -> Optional[int]:
    """New generation for name, or None when Redis is unavailable."""
    client = get_redis_client()
    if client is None:
        return None

    try:
        return int(client.incr(f"{name}:generation"))
    except redis.RedisError as exc:
        logger.warning("Redis generation bump for %s failed: %s", name, exc)
        return None


def delete_prefix(prefix: str) -> None:
    """
    Delete every key starting with prefix, e.g. 'bookings:availability:r1:g3:'.
    """
    client = get_redis_client()
    if client is None:
        return

    try:
        for key in client.scan_iter(prefix + "*"):
            client.delete(key)
    except redis.RedisError as exc:
        logger.warning("Redis delete of %s* failed: %s", prefix, exc)
