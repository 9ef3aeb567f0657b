"""Redis-backed storage for caches shared across processes."""

import hashlib
import logging
from typing import Any, List, Optional

from apistash.core.exceptions import StorageError
from apistash.domain.interfaces.cache import CacheBackend
from apistash.domain.models.common import CacheKey, CacheSlot

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_NAMESPACE = "apistash"


class RedisBackend(CacheBackend):
    """Stores records as plain redis strings under ``<namespace>:<sha256(key)>``.

    Args:
        redis_client: A ``redis.asyncio.Redis`` (or compatible) client.
        namespace: Key prefix isolating this cache inside the database.
    """

    name = "redis"

    def __init__(self, redis_client: Any, namespace: str = DEFAULT_NAMESPACE):
        self._redis = redis_client
        self.namespace = namespace
        logger.info(f"RedisBackend initialized with namespace '{namespace}'.")

    @classmethod
    def from_url(cls, url: str = DEFAULT_REDIS_URL, namespace: str = DEFAULT_NAMESPACE) -> "RedisBackend":
        from redis import asyncio as aioredis

        return cls(aioredis.Redis.from_url(url), namespace=namespace)

    def slot_for(self, key: CacheKey) -> CacheSlot:
        digest = hashlib.sha256(str(key).encode("utf-8")).hexdigest()
        return CacheSlot(f"{self.namespace}:{digest}")

    async def put(self, slot: CacheSlot, record: bytes, ttl_seconds: float) -> None:
        # Native expiry only reclaims memory; validity is still decided by the record
        ttl_ms = max(1, int(ttl_seconds * 1000))
        try:
            await self._redis.set(slot, record, px=ttl_ms)
        except Exception as e:
            raise StorageError(f"Redis write failed for slot {slot}: {e}") from e

    async def get(self, slot: CacheSlot) -> Optional[bytes]:
        try:
            return await self._redis.get(slot)
        except Exception as e:
            raise StorageError(f"Redis read failed for slot {slot}: {e}") from e

    async def delete(self, slot: CacheSlot) -> None:
        try:
            await self._redis.delete(slot)
        except Exception as e:
            raise StorageError(f"Redis delete failed for slot {slot}: {e}") from e

    async def list(self) -> List[CacheSlot]:
        slots: List[CacheSlot] = []
        try:
            async for raw in self._redis.scan_iter(match=f"{self.namespace}:*"):
                slots.append(CacheSlot(raw.decode("utf-8") if isinstance(raw, bytes) else raw))
        except Exception as e:
            raise StorageError(f"Redis scan failed: {e}") from e
        return slots

    async def exists(self, slot: CacheSlot) -> bool:
        try:
            return bool(await self._redis.exists(slot))
        except Exception as e:
            raise StorageError(f"Redis exists failed for slot {slot}: {e}") from e

    async def close(self) -> None:
        close = getattr(self._redis, "aclose", None) or getattr(self._redis, "close", None)
        if close is not None:
            await close()
