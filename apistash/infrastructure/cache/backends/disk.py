"""diskcache-backed storage (SQLite index plus value files)."""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import List, Optional, Union

import diskcache as dc

from apistash.core.exceptions import StorageError
from apistash.domain.interfaces.cache import CacheBackend
from apistash.domain.models.common import CacheKey, CacheSlot

logger = logging.getLogger(__name__)

DEFAULT_DISKCACHE_DIR = Path.home() / ".apistash" / "diskcache"
DEFAULT_NAMESPACE = "apistash"


class DiskCacheBackend(CacheBackend):
    """Stores records in a ``diskcache.Cache``.

    diskcache is synchronous, so every call runs in a worker thread.
    The record TTL is also passed as diskcache's native ``expire`` so the
    library can reclaim space on its own culling passes.
    """

    name = "diskcache"

    def __init__(self, directory: Union[str, Path] = DEFAULT_DISKCACHE_DIR, namespace: str = DEFAULT_NAMESPACE):
        self.namespace = namespace
        try:
            self.disk_cache = dc.Cache(str(directory), timeout=1)
        except Exception as e:
            logger.error(f"Failed to initialize diskcache at {directory}: {e}", exc_info=True)
            raise StorageError(f"Failed to open diskcache directory {directory}: {e}") from e
        logger.info(f"DiskCacheBackend initialized at: {self.disk_cache.directory}")

    def slot_for(self, key: CacheKey) -> CacheSlot:
        digest = hashlib.sha256(str(key).encode("utf-8")).hexdigest()
        return CacheSlot(f"{self.namespace}:{digest}")

    async def put(self, slot: CacheSlot, record: bytes, ttl_seconds: float) -> None:
        expire = max(ttl_seconds, 0.001)
        try:
            await asyncio.to_thread(self.disk_cache.set, slot, record, expire=expire)
        except dc.Timeout as e:
            raise StorageError(f"diskcache write timed out for slot {slot}") from e
        except OSError as e:
            raise StorageError(f"diskcache write failed for slot {slot}: {e}") from e

    async def get(self, slot: CacheSlot) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self.disk_cache.get, slot, None)
        except (dc.Timeout, OSError) as e:
            raise StorageError(f"diskcache read failed for slot {slot}: {e}") from e

    async def delete(self, slot: CacheSlot) -> None:
        try:
            await asyncio.to_thread(self.disk_cache.delete, slot)
        except (dc.Timeout, OSError) as e:
            raise StorageError(f"diskcache delete failed for slot {slot}: {e}") from e

    async def list(self) -> List[CacheSlot]:
        prefix = f"{self.namespace}:"

        def _keys() -> List[CacheSlot]:
            return [CacheSlot(k) for k in self.disk_cache.iterkeys() if isinstance(k, str) and k.startswith(prefix)]

        return await asyncio.to_thread(_keys)

    async def exists(self, slot: CacheSlot) -> bool:
        return await asyncio.to_thread(self.disk_cache.__contains__, slot)

    async def close(self) -> None:
        await asyncio.to_thread(self.disk_cache.close)
