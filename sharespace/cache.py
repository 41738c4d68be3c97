import json
import logging
import threading
from typing import Any, Dict, Optional

import redis

from . import config

logger = logging.getLogger("sharespace.cache")

_client: Optional[redis.Redis] = None
_client_failed = False
_client_lock = threading.Lock()


class RedisKeys:
    @staticmethod
    def file_upload(download_token: str) -> str:
        return f"file_upload:{download_token}"


def get_redis() -> Optional[redis.Redis]:
    """Return a shared Redis client, or None when the cache is unavailable."""

    global _client, _client_failed
    if not config.REDIS_URL or _client_failed:
        return None
    with _client_lock:
        if _client is None:
            try:
                candidate = redis.Redis.from_url(config.REDIS_URL, decode_responses=True)
                candidate.ping()
            except redis.RedisError as error:
                logger.warning("redis_connect_failed error=%s", error)
                _client_failed = True
                return None
            _client = candidate
    return _client


def reset_client() -> None:
    global _client, _client_failed
    with _client_lock:
        _client = None
        _client_failed = False


def set_with_expiry(key: str, value: str, ttl_seconds: int) -> bool:
    client = get_redis()
    if client is None:
        return False
    try:
        client.set(key, value, ex=ttl_seconds)
    except redis.RedisError as error:
        logger.warning("redis_set_failed key=%s error=%s", key, error)
        return False
    return True


def get_json(key: str) -> Optional[Dict[str, Any]]:
    client = get_redis()
    if client is None:
        return None
    try:
        raw = client.get(key)
    except redis.RedisError as error:
        logger.warning("redis_get_failed key=%s error=%s", key, error)
        return None
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("redis_value_corrupt key=%s", key)
        return None
    return value if isinstance(value, dict) else None


def delete_keys(*keys: str) -> None:
    client = get_redis()
    if client is None or not keys:
        return
    try:
        client.delete(*keys)
    except redis.RedisError as error:
        logger.warning("redis_delete_failed keys=%s error=%s", keys, error)


def ping() -> str:
    if not config.REDIS_URL:
        return "disabled"
    client = get_redis()
    if client is None:
        return "unavailable"
    try:
        client.ping()
    except redis.RedisError as error:
        return f"error: {str(error)[:100]}"
    return "ok"
