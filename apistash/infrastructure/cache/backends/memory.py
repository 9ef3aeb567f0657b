"""In-process dictionary backend."""

import logging
from typing import Dict, List, Optional

from apistash.domain.interfaces.cache import CacheBackend
from apistash.domain.models.common import CacheSlot

logger = logging.getLogger(__name__)


class MemoryBackend(CacheBackend):
    """Keeps encoded records in a dict owned by this instance."""

    name = "memory"

    def __init__(self) -> None:
        self._records: Dict[CacheSlot, bytes] = {}
        logger.info("MemoryBackend initialized.")

    async def put(self, slot: CacheSlot, record: bytes, ttl_seconds: float) -> None:
        self._records[slot] = record

    async def get(self, slot: CacheSlot) -> Optional[bytes]:
        return self._records.get(slot)

    async def delete(self, slot: CacheSlot) -> None:
        self._records.pop(slot, None)

    async def list(self) -> List[CacheSlot]:
        return list(self._records)

    async def exists(self, slot: CacheSlot) -> bool:
        return slot in self._records
