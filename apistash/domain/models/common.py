"""Defines common Value Objects used across different domain contexts.

These objects represent simple values or concepts like cache keys, slots,
rate limit policies and backoff strategies, ensuring consistency and type
safety.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, NewType

# === Caching Context ===
CacheKey = NewType("CacheKey", str)      # Logical key for a cache entry
CacheSlot = NewType("CacheSlot", str)    # Backend storage name derived from a CacheKey

# === Transport Context ===
RawPayload = NewType("RawPayload", bytes)  # Response body exactly as returned by a transport


class BackoffStrategy(str, Enum):
    """Rule for growing the delay between successive retry attempts."""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"

    @classmethod
    def parse(cls, value: Any) -> "BackoffStrategy":
        """Returns the strategy named by ``value``.

        Raises:
            ValueError: If the name is not a known strategy.
        """
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


class _NoFallback:
    """Sentinel type marking that no fallback value is configured."""

    _instance = None

    def __new__(cls) -> "_NoFallback":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_FALLBACK"

    def __bool__(self) -> bool:
        return False


# ``None`` is a legitimate fallback value, so absence needs its own marker.
NO_FALLBACK: Any = _NoFallback()


@dataclass(frozen=True)
class RateLimitPolicy:
    """Value Object describing a sliding window rate limit."""
    count: int = 60
    window_seconds: float = 60.0
    blocking: bool = False
