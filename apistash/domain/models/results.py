"""Structured outcomes of retried and orchestrated calls.

Both result types separate "this is the real result" from "this is the
configured fallback because every attempt failed", so callers never have
to compare against the fallback value to detect failure.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from apistash.core.exceptions import ApiStashError, ExhaustedRetries


@dataclass
class RetryOutcome:
    """Result of one ``RetryExecutor.retry`` invocation."""
    value: Any = None
    succeeded: bool = False
    used_fallback: bool = False
    attempts: int = 0
    delays: List[float] = field(default_factory=list)  # Inter-attempt delays actually slept
    error: Optional[ExhaustedRetries] = None

    def unwrap(self) -> Any:
        """Returns the real or fallback value, or raises the terminal failure."""
        if self.succeeded or self.used_fallback:
            return self.value
        raise self.error or ExhaustedRetries(self.attempts)


class CallSource(str, Enum):
    """Where the value of an orchestrated call came from."""
    TRANSPORT = "transport"
    CACHE = "cache"
    FALLBACK = "fallback"
    FAILED = "failed"


@dataclass
class CallResult:
    """Result of one orchestrated call.

    Carries either a value (from the transport, the cache or the fallback)
    or, when ``source`` is FAILED, the error that ended the call.
    """
    value: Any = None
    source: CallSource = CallSource.FAILED
    attempts: int = 0
    error: Optional[ApiStashError] = None

    @property
    def ok(self) -> bool:
        """True when the value is a real (transport or cached) result."""
        return self.source in (CallSource.TRANSPORT, CallSource.CACHE)

    @property
    def from_cache(self) -> bool:
        return self.source is CallSource.CACHE

    def unwrap(self) -> Any:
        if self.source is CallSource.FAILED:
            raise self.error or ExhaustedRetries(self.attempts)
        return self.value
