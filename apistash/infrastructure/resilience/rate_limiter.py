"""Implementation of a rate limiter.

Controls the frequency of outgoing requests to prevent hitting API rate
limits. Uses a sliding window over admission timestamps: at most ``limit``
admissions in any trailing ``window_seconds`` interval. The window can be
persisted to a JSON file so it survives process restarts.
"""

import asyncio
import json
import logging
import os
import time
from collections import deque
from pathlib import Path
from typing import Awaitable, Callable, Deque, List, Optional, Union

import aiofiles

from apistash.core.exceptions import ConfigurationError, RateLimitExceeded, StorageError
from apistash.domain.events.api_events import EventListener, RequestDeferred, dispatch_event

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 60  # Max 60 requests...
DEFAULT_TIME_WINDOW_SECONDS = 60  # ...per 60 seconds
DEFAULT_MAX_WAIT_CYCLES = 100


class WindowStateFile:
    """Persists a limiter window as a single JSON record.

    Layout: ``{"limit": int, "window_seconds": float, "timestamps": [float, ...]}``
    with timestamps oldest first.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> List[float]:
        """Reads the persisted timestamps; a missing or corrupt file yields []."""
        if not self.path.is_file():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            timestamps = data["timestamps"]
            return sorted(float(ts) for ts in timestamps)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable rate limiter state {self.path}: {e}")
            return []

    async def save(self, timestamps: List[float], limit: int, window_seconds: float) -> None:
        """Overwrites the record atomically (temp file then os.replace).

        Raises:
            StorageError: If the file cannot be written.
        """
        payload = json.dumps({"limit": limit, "window_seconds": window_seconds, "timestamps": timestamps})
        temp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, mode="w", encoding="utf-8") as f:
                await f.write(payload)
            os.replace(temp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to persist rate limiter state to {self.path}: {e}")
            raise StorageError(f"Failed to persist rate limiter state: {e}") from e


class RateLimiter:
    """Sliding window rate limiter over one logical caller.

    ``allow_request`` never waits: it admits or denies. ``acquire`` is the
    blocking variant: it suspends the caller until a slot frees up, trading
    latency for a guarantee that the call eventually proceeds.
    """

    def __init__(
        self,
        limit: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_TIME_WINDOW_SECONDS,
        state_file: Optional[WindowStateFile] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_wait_cycles: int = DEFAULT_MAX_WAIT_CYCLES,
        on_event: Optional[EventListener] = None,
    ):
        """Initializes the rate limiter.

        Args:
            limit: Maximum number of admissions in the window. 0 denies
                every request.
            window_seconds: The window length in seconds.
            state_file: Optional persistence for the window.
            clock: Wall-clock source; wall time keeps persisted windows
                meaningful across restarts.
            sleep: Coroutine used by ``acquire`` to wait.
            max_wait_cycles: Upper bound on evaluations in ``acquire``.
            on_event: Optional listener for RequestDeferred events.
        """
        if limit < 0:
            raise ConfigurationError("Rate limit must not be negative.")
        if window_seconds <= 0:
            raise ConfigurationError("Rate limit window must be positive.")
        if max_wait_cycles < 1:
            raise ConfigurationError("max_wait_cycles must be at least 1.")

        self.limit = limit
        self.window_seconds = window_seconds
        self.state_file = state_file
        self.max_wait_cycles = max_wait_cycles
        self._clock = clock
        self._sleep = sleep
        self._on_event = on_event
        self._lock = asyncio.Lock()
        self.timestamps: Deque[float] = deque()

        if state_file is not None:
            restored = state_file.load()
            # Only the newest `limit` admissions can still matter
            self.timestamps.extend(restored[-limit:] if limit else [])
            logger.debug(f"Restored {len(self.timestamps)} rate limiter timestamps from {state_file.path}")

        logger.info(f"RateLimiter initialized: {limit} requests / {window_seconds} seconds"
                    f"{f' (persisted to {state_file.path})' if state_file else ''}")

    def _prune_timestamps(self, now: float) -> None:
        """Removes timestamps that have slid out of the window."""
        while self.timestamps and now - self.timestamps[0] >= self.window_seconds:
            self.timestamps.popleft()

    def _wait_needed(self, now: float) -> float:
        # Caller holds the lock and has pruned
        if len(self.timestamps) < self.limit:
            return 0.0
        oldest_relevant_timestamp = self.timestamps[0]
        return max(0.0, oldest_relevant_timestamp + self.window_seconds - now)

    async def _persist(self, timestamps: List[float]) -> None:
        if self.state_file is not None:
            await self.state_file.save(timestamps, self.limit, self.window_seconds)

    async def _try_admit(self) -> Optional[float]:
        """Admits the caller if possible. Returns None when admitted, else the wait."""
        async with self._lock:
            now = self._clock()
            self._prune_timestamps(now)
            if len(self.timestamps) < self.limit:
                # The admission only counts once it has been saved
                await self._persist(list(self.timestamps) + [now])
                self.timestamps.append(now)
                logger.debug(f"Rate limit permission granted ({len(self.timestamps)}/{self.limit}).")
                return None
            return self._wait_needed(now)

    async def allow_request(self) -> bool:
        """Non-blocking admission check.

        Returns:
            True if the caller was admitted (and counted), False otherwise.
        """
        if self.limit == 0:
            return False
        admitted = await self._try_admit() is None
        if not admitted:
            logger.debug(f"Rate limit reached ({self.limit}/{self.window_seconds}s). Request denied.")
        return admitted

    async def acquire(self, timeout: Optional[float] = None) -> None:
        """Blocking admission: waits until the caller is admitted.

        The wait is computed under the window lock and slept outside it, so
        a waiting caller never blocks others from evaluating the window.

        Args:
            timeout: Maximum total seconds to wait; None waits as long as
                ``max_wait_cycles`` allows.

        Raises:
            RateLimitExceeded: If ``limit`` is 0, if the next wait would
                overrun ``timeout``, or if ``max_wait_cycles`` evaluations
                did not yield an admission.
        """
        if self.limit == 0:
            raise RateLimitExceeded("Rate limit is 0; no request can ever be admitted.")

        waited = 0.0
        for _ in range(self.max_wait_cycles):
            wait_time = await self._try_admit()
            if wait_time is None:
                return
            if timeout is not None and waited + wait_time > timeout:
                raise RateLimitExceeded(
                    f"Rate limit wait of {wait_time:.2f}s exceeds remaining timeout.",
                    retry_after=wait_time,
                )
            logger.debug(f"Rate limit reached. Waiting for {wait_time:.2f} seconds.")
            dispatch_event(RequestDeferred(wait_time_seconds=wait_time), self._on_event)
            await self._sleep(wait_time)
            waited += wait_time

        raise RateLimitExceeded(
            f"No admission after {self.max_wait_cycles} wait cycles.",
            retry_after=await self.wait_time(),
        )

    async def wait_time(self) -> float:
        """Seconds until the next request could be admitted (0 if now)."""
        async with self._lock:
            now = self._clock()
            self._prune_timestamps(now)
            if self.limit == 0:
                return float("inf")
            return self._wait_needed(now)

    async def remaining(self) -> int:
        """Free admissions left in the current window."""
        async with self._lock:
            self._prune_timestamps(self._clock())
            return max(0, self.limit - len(self.timestamps))

    async def reset(self) -> None:
        """Clears the window and overwrites any persisted state."""
        async with self._lock:
            await self._persist([])
            self.timestamps.clear()
        logger.info("RateLimiter window reset.")
