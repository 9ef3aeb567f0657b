"""Reversible byte-stream compression applied to cache records."""

import gzip
import logging
import zlib

from apistash.core.exceptions import StorageError

logger = logging.getLogger(__name__)

DEFAULT_COMPRESSION_LEVEL = 6


class DataCompressor:
    """Gzip compressor. Stateless; one instance can be shared freely."""

    def __init__(self, level: int = DEFAULT_COMPRESSION_LEVEL):
        if not 0 <= level <= 9:
            raise ValueError("Compression level must be between 0 and 9.")
        self.level = level

    def compress(self, data: bytes) -> bytes:
        try:
            return gzip.compress(data, compresslevel=self.level)
        except (TypeError, zlib.error) as e:
            raise StorageError(f"Failed to compress data: {e}") from e

    def decompress(self, data: bytes) -> bytes:
        """Decompresses gzip data.

        Raises:
            StorageError: If ``data`` is not a valid gzip stream.
        """
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error, TypeError) as e:
            raise StorageError(f"Failed to decompress data: {e}") from e
