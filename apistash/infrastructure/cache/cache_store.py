"""Expiring key/value cache store over a pluggable backend.

Records are encoded as ``{value, expires_at}``, optionally gzip-compressed,
and written to the backend selected at construction. Expired and corrupt
records are removed lazily when read. When a capacity is configured, the
entries closest to expiry are evicted after each write.
"""

import asyncio
import functools
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from apistash.core.exceptions import ConfigurationError, StorageError
from apistash.domain.interfaces.cache import CacheBackend
from apistash.domain.models.cache import CacheEntry
from apistash.domain.models.common import CacheKey, CacheSlot
from apistash.infrastructure.cache.compressor import DataCompressor
from apistash.infrastructure.cache.serializers import JsonRecordSerializer, RecordSerializer

logger = logging.getLogger(__name__)

# Default Configuration Constants
DEFAULT_TTL_SECONDS = 60 * 60  # 1 hour
DEFAULT_MAX_ENTRIES = 20

_MISS = object()


class _KeyedLocks:
    """One asyncio.Lock per slot, discarded once no task holds or awaits it."""

    def __init__(self) -> None:
        self._locks: Dict[CacheSlot, asyncio.Lock] = {}
        self._waiters: Dict[CacheSlot, int] = {}

    @asynccontextmanager
    async def hold(self, slot: CacheSlot) -> AsyncIterator[None]:
        lock = self._locks.setdefault(slot, asyncio.Lock())
        self._waiters[slot] = self._waiters.get(slot, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[slot] -= 1
            if self._waiters[slot] == 0:
                del self._waiters[slot]
                del self._locks[slot]

    def __len__(self) -> int:
        return len(self._locks)


class CacheStore:
    """Key to value store with per-entry expiration and a capacity bound.

    Args:
        backend: Storage backend, chosen once (see ``create_backend``).
        compressor: Compressor applied to encoded records, or None to store
            them uncompressed.
        serializer: Record encoding (JSON by default).
        max_entries: Capacity bound; None disables eviction.
        default_ttl: TTL used when ``store`` is called without one.
        clock: Wall-clock source (seconds since the epoch).
    """

    def __init__(
        self,
        backend: CacheBackend,
        compressor: Optional[DataCompressor] = None,
        serializer: Optional[RecordSerializer] = None,
        max_entries: Optional[int] = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries is not None and max_entries < 1:
            raise ConfigurationError("max_entries must be a positive integer or None.")
        self.backend = backend
        self.compressor = compressor
        self.serializer = serializer or JsonRecordSerializer()
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._key_locks = _KeyedLocks()
        self._evict_lock = asyncio.Lock()

        logger.info(
            f"CacheStore initialized. backend={backend.name}, serializer={self.serializer.name}, "
            f"compression={'on' if compressor else 'off'}, max_entries={max_entries}, default_ttl={default_ttl}s"
        )

    # --- Encoding ---

    def _encode(self, value: Any, expires_at: float) -> bytes:
        record = self.serializer.dumps(value, expires_at)
        if self.compressor:
            record = self.compressor.compress(record)
        return record

    def _decode(self, record: bytes) -> Tuple[Any, float]:
        """Raises StorageError when the record cannot be decoded."""
        if self.compressor:
            record = self.compressor.decompress(record)
        return self.serializer.loads(record)

    # --- Public Interface ---

    async def store(self, key: CacheKey, value: Any, ttl_seconds: Optional[float] = None) -> CacheEntry:
        """Stores ``value`` under ``key`` until ``now + ttl_seconds``.

        An existing entry for the key is fully replaced. When the backend
        holds more than ``max_entries`` afterwards, the entries with the
        oldest expiration are evicted; the entry just written is never
        evicted by its own write.

        Returns:
            The stored entry.

        Raises:
            StorageError: If encoding or the backend write fails. Nothing is
                written in that case.
        """
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + ttl
        slot = self.backend.slot_for(key)

        try:
            record = self._encode(value, expires_at)
        except StorageError as e:
            logger.error(f"Failed to encode cache entry for key '{key}': {e}")
            raise StorageError(f"Failed to encode cache data for key: {key}", key=key) from e

        if self.max_entries is None:
            await self._put(key, slot, record, ttl)
        else:
            # Writes and their eviction passes are serialized store-wide
            async with self._evict_lock:
                await self._put(key, slot, record, ttl)
                await self._evict(keep=slot)
        return CacheEntry(key=key, value=value, expires_at=expires_at)

    async def retrieve(self, key: CacheKey, default: Any = None) -> Any:
        """Returns the cached value for ``key`` or ``default`` on a miss.

        Expired and undecodable records are deleted and reported as a miss.
        Backend read failures are also reported as a miss.
        """
        entry = await self.get_entry(key)
        return default if entry is None else entry.value

    async def get_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        """Like ``retrieve`` but returns the full entry (None on a miss)."""
        slot = self.backend.slot_for(key)
        async with self._key_locks.hold(slot):
            try:
                record = await self.backend.get(slot)
            except StorageError as e:
                logger.warning(f"Cache read failed for key '{key}': {e}. Treating as miss.")
                return None

            if record is None:
                logger.debug(f"Cache MISS for key: {key}")
                return None

            try:
                value, expires_at = self._decode(record)
            except StorageError as e:
                logger.warning(f"Corrupt cache entry for key '{key}': {e}. Removing.")
                await self._delete_quietly(slot)
                return None

            if self._clock() >= expires_at:
                logger.debug(f"Cache EXPIRED for key: {key}. Removing.")
                await self._delete_quietly(slot)
                return None

        logger.debug(f"Cache HIT for key: {key}")
        return CacheEntry(key=key, value=value, expires_at=expires_at)

    async def exists(self, key: CacheKey) -> bool:
        """Checks whether the backend holds a record for ``key``.

        Expiry is not evaluated, so an expired but not yet removed entry
        still counts as existing.
        """
        try:
            return await self.backend.exists(self.backend.slot_for(key))
        except StorageError as e:
            logger.warning(f"Cache existence check failed for key '{key}': {e}")
            return False

    async def clear(self, key: Optional[CacheKey] = None) -> int:
        """Removes the entry for ``key``, or every entry when ``key`` is None.

        Returns:
            The number of slots deleted (for a single key: 1 if it existed).
        """
        if key is not None:
            slot = self.backend.slot_for(key)
            async with self._key_locks.hold(slot):
                existed = await self.backend.exists(slot)
                await self.backend.delete(slot)
            logger.debug(f"Cleared cache key: {key}")
            return int(existed)

        slots = await self.backend.list()
        for slot in slots:
            async with self._key_locks.hold(slot):
                await self.backend.delete(slot)
        logger.info(f"Cleared {len(slots)} cache entries from backend '{self.backend.name}'.")
        return len(slots)

    async def purge_expired(self) -> int:
        """Deletes every expired or corrupt record.

        Runs only when called; there is no background sweep.

        Returns:
            The number of records removed.
        """
        removed = 0
        now = self._clock()
        for slot, expires_at in await self._scan():
            if expires_at is None or now >= expires_at:
                async with self._key_locks.hold(slot):
                    await self._delete_quietly(slot)
                removed += 1
        logger.info(f"Purged {removed} expired cache entries.")
        return removed

    async def size(self) -> int:
        """Number of records currently held by the backend (live or not)."""
        return len(await self.backend.list())

    async def close(self) -> None:
        await self.backend.close()

    # --- Eviction ---

    async def _scan(self, exclude: Optional[CacheSlot] = None) -> List[Tuple[CacheSlot, Optional[float]]]:
        """Reads the expiry of every slot; None marks an unreadable record."""
        rows: List[Tuple[CacheSlot, Optional[float]]] = []
        for slot in await self.backend.list():
            if slot == exclude:
                continue
            try:
                record = await self.backend.get(slot)
                expires_at: Optional[float] = self._decode(record)[1] if record is not None else None
            except StorageError:
                expires_at = None
            rows.append((slot, expires_at))
        return rows

    async def _put(self, key: CacheKey, slot: CacheSlot, record: bytes, ttl: float) -> None:
        async with self._key_locks.hold(slot):
            await self.backend.put(slot, record, ttl)
        logger.debug(f"Cache PUT key: {key} slot: {slot[:16]} TTL: {ttl}s")

    async def _evict(self, keep: CacheSlot) -> None:
        # Caller holds _evict_lock
        slots = await self.backend.list()
        excess = len(slots) - self.max_entries
        if excess <= 0:
            return

        candidates = await self._scan(exclude=keep)
        # Unreadable records first, then soonest expiration
        candidates.sort(key=lambda row: float("-inf") if row[1] is None else row[1])
        for slot, _ in candidates[:excess]:
            async with self._key_locks.hold(slot):
                await self._delete_quietly(slot)
            logger.debug(f"Cache EVICTED slot: {slot[:16]}")
        logger.info(f"Evicted {min(excess, len(candidates))} cache entries (capacity {self.max_entries}).")

    async def _delete_quietly(self, slot: CacheSlot) -> None:
        try:
            await self.backend.delete(slot)
        except StorageError as e:
            logger.warning(f"Failed to delete cache slot {slot}: {e}")

    # --- Decorator (Optional convenience) ---

    def cached(self, key_func: Callable[..., str], ttl_seconds: Optional[float] = None) -> Callable:
        """Decorator caching the result of an async function.

        Args:
            key_func: Builds the cache key from the call's arguments.
            ttl_seconds: TTL for stored results (store default if None).
        """
        def decorator(func: Callable) -> Callable:
            @functools.wraps(func)
            async def wrapper(*args: Any, **kwargs: Any) -> Any:
                key = CacheKey(key_func(*args, **kwargs))
                cached_value = await self.retrieve(key, default=_MISS)
                if cached_value is not _MISS:
                    return cached_value
                result = await func(*args, **kwargs)
                await self.store(key, result, ttl_seconds)
                return result
            return wrapper
        return decorator
