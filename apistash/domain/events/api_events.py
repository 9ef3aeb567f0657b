"""Domain Events related to API calls and resilience.

Examples include events for when calls are rejected, deferred, retried,
served from cache, or exhausted.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class DomainEvent:
    """Base class for domain events."""


EventListener = Callable[[DomainEvent], None]


# --- Admission Events ---

@dataclass
class RequestRejected(DomainEvent):
    """Event triggered when the rate limiter denies a call."""
    cache_key: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class RequestDeferred(DomainEvent):
    """Event triggered when a blocking limiter suspends the caller."""
    wait_time_seconds: float
    timestamp: float = field(default_factory=time.time)


# --- Cache Events ---

@dataclass
class CacheHit(DomainEvent):
    cache_key: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CacheMiss(DomainEvent):
    cache_key: str
    timestamp: float = field(default_factory=time.time)


# --- Retry Events ---

@dataclass
class RetryScheduled(DomainEvent):
    """Event triggered when a retry is scheduled for a failed attempt."""
    attempt_number: int
    delay_seconds: float
    error_type: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class RetriesExhausted(DomainEvent):
    """Event triggered when every attempt failed."""
    attempts: int
    error_type: str
    error_message: str
    fallback_used: bool
    timestamp: float = field(default_factory=time.time)


# --- Call Outcome Events ---

@dataclass
class RequestSucceeded(DomainEvent):
    """Event triggered when the transport call succeeded (possibly after retries)."""
    cache_key: str
    attempts: int
    latency_ms: float
    timestamp: float = field(default_factory=time.time)


def dispatch_event(event: DomainEvent, listener: Optional[EventListener] = None) -> None:
    """Logs the event and forwards it to ``listener`` if one is registered.

    A failing listener never breaks the call that emitted the event.
    """
    logger.debug(f"EVENT: {event}")
    if listener is None:
        return
    try:
        listener(event)
    except Exception as e:
        logger.error(f"Event listener failed for {type(event).__name__}: {e}", exc_info=True)
