"""Interface for cache storage backends.

Defines the contract the Cache Store relies on: storing, fetching,
deleting and listing opaque encoded records under backend slots.
Encoding, compression, expiry and eviction are handled by the store.
"""

import abc
from typing import List, Optional

from ..models.common import CacheKey, CacheSlot


class CacheBackend(abc.ABC):
    """Abstract Base Class for cache storage backends."""

    #: Short name used in configuration and logs.
    name: str = "abstract"

    def slot_for(self, key: CacheKey) -> CacheSlot:
        """Maps a logical key to the storage name used by this backend.

        Backends needing a flat or filesystem-safe namespace override this
        with a one-way hash.
        """
        return CacheSlot(key)

    @abc.abstractmethod
    async def put(self, slot: CacheSlot, record: bytes, ttl_seconds: float) -> None:
        """Stores ``record`` under ``slot``, fully replacing any previous record.

        Args:
            slot: The backend storage name.
            record: The encoded (and possibly compressed) cache record.
            ttl_seconds: Record lifetime; backends with native expiry may use it.

        Raises:
            StorageError: If the write fails. A failed write leaves the
                previous record (if any) intact.
        """
        pass

    @abc.abstractmethod
    async def get(self, slot: CacheSlot) -> Optional[bytes]:
        """Returns the stored record, or None if the slot is empty."""
        pass

    @abc.abstractmethod
    async def delete(self, slot: CacheSlot) -> None:
        """Removes the record under ``slot``; a missing slot is not an error."""
        pass

    @abc.abstractmethod
    async def list(self) -> List[CacheSlot]:
        """Lists every slot in this backend's namespace."""
        pass

    async def exists(self, slot: CacheSlot) -> bool:
        """Checks whether a record is present without decoding it."""
        return await self.get(slot) is not None

    async def close(self) -> None:
        """Releases backend resources (connections, file handles)."""
        return None
