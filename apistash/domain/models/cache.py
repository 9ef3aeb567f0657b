"""Cache entry value object."""

from dataclasses import dataclass
from typing import Any

from apistash.domain.models.common import CacheKey


@dataclass
class CacheEntry:
    """Internal representation of a cache entry with expiry.

    An entry is logically dead once ``now >= expires_at``.
    """
    key: CacheKey
    value: Any
    expires_at: float  # Unix timestamp when the entry expires

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining_ttl(self, now: float) -> float:
        """Seconds left before expiry (never negative)."""
        return max(0.0, self.expires_at - now)
