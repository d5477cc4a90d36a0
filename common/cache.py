# common/cache.py
import json
import logging
import os
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client if REDIS_URL is configured, otherwise None.

    Caching is strictly best-effort: an unreachable Redis disables it
    instead of failing the request.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    try:
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
    except redis.RedisError:
        logger.warning("Redis at %s unreachable, caching disabled", redis_url)
        return None

    _redis_client = client
    return _redis_client


def vehicle_key(vehicle_id: int) -> str:
    return f"vehicle:{vehicle_id}"


def availability_prefix(vehicle_id: int) -> str:
    return f"vehicles:availability:{vehicle_id}:"


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(key)
    except redis.RedisError:
        logger.warning("Cache read failed for %s", key)
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
    except redis.RedisError:
        logger.warning("Cache write failed for %s", key)


def delete_prefix(prefix: str) -> None:
    """
    Delete all keys starting with prefix.
    Example: prefix='vehicle:42' or 'vehicles:availability:42:'.
    """
    client = get_redis_client()
    if client is None:
        return

    try:
        for k in client.scan_iter(prefix + "*"):
            client.delete(k)
    except redis.RedisError:
        logger.warning("Cache invalidation failed for prefix %s", prefix)
