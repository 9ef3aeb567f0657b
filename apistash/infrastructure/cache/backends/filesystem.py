"""File-per-key backend.

Layout: ``<directory>/<sha256(key)>.cache``. Each file holds one encoded
(and possibly compressed) record.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import List, Optional, Union

import aiofiles

from apistash.core.exceptions import StorageError
from apistash.domain.interfaces.cache import CacheBackend
from apistash.domain.models.common import CacheKey, CacheSlot

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path.home() / ".apistash" / "cache"
CACHE_FILE_SUFFIX = ".cache"


class FileSystemBackend(CacheBackend):
    """Stores each record in its own file named after a hash of the key."""

    name = "filesystem"

    def __init__(self, directory: Union[str, Path] = DEFAULT_CACHE_DIR, suffix: str = CACHE_FILE_SUFFIX):
        # The directory is created lazily on the first write
        self.directory = Path(directory)
        self.suffix = suffix
        logger.info(f"FileSystemBackend initialized at: {self.directory}")

    def slot_for(self, key: CacheKey) -> CacheSlot:
        return CacheSlot(hashlib.sha256(str(key).encode("utf-8")).hexdigest())

    def _path(self, slot: CacheSlot) -> Path:
        return self.directory / f"{slot}{self.suffix}"

    async def put(self, slot: CacheSlot, record: bytes, ttl_seconds: float) -> None:
        path = self._path(slot)
        temp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, mode="wb") as f:
                await f.write(record)
            # os.replace is atomic on both POSIX and Windows
            os.replace(temp_path, path)
        except OSError as e:
            logger.error(f"Failed to write cache file {path}: {e}")
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                logger.debug(f"Could not remove temporary cache file {temp_path}")
            raise StorageError(f"Failed to write cache file at path: {path}") from e

    async def get(self, slot: CacheSlot) -> Optional[bytes]:
        path = self._path(slot)
        try:
            async with aiofiles.open(path, mode="rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read cache file {path}: {e}") from e

    async def delete(self, slot: CacheSlot) -> None:
        try:
            self._path(slot).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete cache file for slot {slot}: {e}") from e

    async def list(self) -> List[CacheSlot]:
        if not self.directory.is_dir():
            return []
        return [CacheSlot(p.name[: -len(self.suffix)]) for p in self.directory.glob(f"*{self.suffix}")]

    async def exists(self, slot: CacheSlot) -> bool:
        return self._path(slot).is_file()
