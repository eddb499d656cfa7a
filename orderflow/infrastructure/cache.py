"""Read-through cache for order and payment snapshots.

Redis when it answers, a process-local TTL cache otherwise. The cache is
advisory: any failure is logged and behaves like a miss.
"""
import json
from functools import lru_cache
from typing import Any, Optional

import redis
from cachetools import TTLCache

from orderflow.core.logging_config import get_logger
from orderflow.core_settings import get_settings

logger = get_logger(__name__)


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


def payment_key(payment_id: int) -> str:
    return f"payment:{payment_id}"


class EntityCache:
    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl: int = 3600,
        local_size: int = 1024,
        client: Optional[redis.Redis] = None,
    ):
        self.ttl = ttl
        self.local_cache = TTLCache(maxsize=local_size, ttl=ttl)
        self.redis_client = client
        if self.redis_client is None and redis_url:
            self.redis_client = self._connect(redis_url)

    @staticmethod
    def _connect(redis_url: str) -> Optional[redis.Redis]:
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            return client
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable, using local cache: {e}")
            return None

    def get(self, key: str) -> Optional[dict[str, Any]]:
        if self.redis_client is not None:
            try:
                val = self.redis_client.get(key)
                if val is not None:
                    return json.loads(val)
                return None
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Cache read failed for {key}: {e}")
        return self.local_cache.get(key)

    def put(self, key: str, value: dict[str, Any], ttl: Optional[int] = None) -> None:
        ttl = ttl or self.ttl
        if self.redis_client is not None:
            try:
                self.redis_client.setex(key, ttl, json.dumps(value))
                return
            except (redis.RedisError, TypeError) as e:
                logger.warning(f"Cache write failed for {key}: {e}")
        self.local_cache[key] = value

    def invalidate(self, key: str) -> None:
        self.local_cache.pop(key, None)
        if self.redis_client is not None:
            try:
                self.redis_client.delete(key)
            except redis.RedisError as e:
                logger.warning(f"Cache invalidation failed for {key}: {e}")

    def ping(self) -> bool:
        if self.redis_client is None:
            return False
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError:
            return False


@lru_cache
def get_cache() -> EntityCache:
    settings = get_settings()
    return EntityCache(
        redis_url=settings.REDIS_URL,
        ttl=settings.CACHE_TTL_SECONDS,
        local_size=settings.LOCAL_CACHE_SIZE,
    )
