"""Command Handler: Orchestrates CLI command execution.

Receives commands from the main entry point (main.py) and delegates the
work to the Request Orchestrator, the Cache Store and the Rate Limiter.
Every handler returns a process exit code: 0 on success, 1 when the
command failed (the error has already been displayed).
"""

import logging
import time
from pathlib import Path
from typing import Any, List, Optional

import yaml

from apistash.core.exceptions import ApiStashError
from apistash.core.services.request_orchestrator import RequestOrchestrator
from apistash.domain.models.common import CacheKey
from apistash.domain.models.request import ApiRequest
from apistash.domain.models.results import CallSource
from apistash.infrastructure.cache.cache_store import CacheStore
from apistash.infrastructure.cli.display import ConsoleDisplay
from apistash.infrastructure.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class CommandHandler:
    """Handles incoming commands and delegates to appropriate services."""

    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        cache_store: Optional[CacheStore],
        rate_limiter: RateLimiter,
        ui: ConsoleDisplay,
    ):
        """Initializes the CommandHandler with required services."""
        self.orchestrator = orchestrator
        self.cache_store = cache_store
        self.rate_limiter = rate_limiter
        self.ui = ui

    # --- Requests ---

    async def handle_request(self, request: ApiRequest) -> int:
        """Handles the 'request' command: one orchestrated call."""
        logger.info(f"Handling 'request' command: {request.method} {request.url}")
        try:
            result = await self.orchestrator.send(request)
        except ApiStashError as e:
            logger.error(f"Request {request.method} {request.url} failed: {e}")
            self.ui.display_error(str(e))
            return 1

        self.ui.display_result(result)
        if result.source is CallSource.FALLBACK:
            self.ui.display_warning(f"Every attempt failed; the fallback value was returned. {result.error}")
        return 0

    @staticmethod
    def load_batch_file(path: Path) -> List[ApiRequest]:
        """Reads a YAML or JSON list of request mappings.

        Raises:
            ValueError: If the file is not a list of valid request mappings.
            OSError: If the file cannot be read.
        """
        with open(path, "r", encoding="utf-8") as f:
            # JSON is a subset of YAML, so one loader covers both
            data = yaml.safe_load(f)
        if not isinstance(data, list):
            raise ValueError("Batch file must contain a list of request mappings.")
        requests = []
        for index, item in enumerate(data):
            if not isinstance(item, dict):
                raise ValueError(f"Batch item {index} is not a mapping.")
            try:
                requests.append(ApiRequest.from_dict(item))
            except ValueError as e:
                raise ValueError(f"Batch item {index}: {e}") from e
        return requests

    async def handle_batch(self, path: Path, concurrency: Optional[int] = None) -> int:
        """Handles the 'batch' command. Exits 1 if any item failed outright."""
        logger.info(f"Handling 'batch' command for file: {path}")
        try:
            requests = self.load_batch_file(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Could not load batch file {path}: {e}")
            self.ui.display_error(f"Could not load batch file: {e}")
            return 1

        if not requests:
            self.ui.display_info("Batch file contains no requests.")
            return 0

        try:
            results = await self.orchestrator.send_batch(requests, concurrency=concurrency)
        except ApiStashError as e:
            self.ui.display_error(str(e))
            return 1

        self.ui.display_batch(results, [r.url for r in requests])
        failed = sum(1 for r in results if r.source is CallSource.FAILED)
        if failed:
            self.ui.display_warning(f"{failed} of {len(results)} request(s) failed.")
            return 1
        return 0

    # --- Cache ---

    def _require_cache(self) -> Optional[CacheStore]:
        if self.cache_store is None:
            self.ui.display_error("Caching is disabled (cache.enabled = false).")
        return self.cache_store

    async def handle_cache_get(self, key: str) -> int:
        """Handles 'cache get'. Exits 1 on a miss."""
        store = self._require_cache()
        if store is None:
            return 1
        entry = await store.get_entry(CacheKey(key))
        if entry is None:
            self.ui.display_info(f"No live cache entry for '{key}'.")
            return 1
        ttl = entry.remaining_ttl(time.time())
        self.ui.display_output(entry.value, title=f"{key} (expires in {ttl:.0f}s)")
        return 0

    async def handle_cache_put(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> int:
        store = self._require_cache()
        if store is None:
            return 1
        try:
            entry = await store.store(CacheKey(key), value, ttl_seconds)
        except ApiStashError as e:
            logger.error(f"Failed to store cache key '{key}': {e}", exc_info=True)
            self.ui.display_error(f"Failed to store cache entry: {e}")
            return 1
        ttl = entry.remaining_ttl(time.time())
        self.ui.display_info(f"Stored '{key}' for {ttl:.0f}s.")
        return 0

    async def handle_cache_clear(self, key: Optional[str] = None) -> int:
        """Handles 'cache clear' for one key, or every entry when key is None."""
        store = self._require_cache()
        if store is None:
            return 1
        logger.info(f"Handling 'cache clear' for: {key or 'all entries'}")
        try:
            removed = await store.clear(CacheKey(key) if key else None)
        except ApiStashError as e:
            logger.error(f"Failed to clear cache: {e}", exc_info=True)
            self.ui.display_error(f"Failed to clear cache: {e}")
            return 1
        self.ui.display_info(f"Cleared {removed} cache entr{'y' if removed == 1 else 'ies'}.")
        return 0

    async def handle_cache_purge(self) -> int:
        store = self._require_cache()
        if store is None:
            return 1
        try:
            removed = await store.purge_expired()
        except ApiStashError as e:
            self.ui.display_error(f"Failed to purge cache: {e}")
            return 1
        self.ui.display_info(f"Purged {removed} expired or unreadable cache entr{'y' if removed == 1 else 'ies'}.")
        return 0

    async def handle_cache_stats(self) -> int:
        store = self._require_cache()
        if store is None:
            return 1
        try:
            size = await store.size()
        except ApiStashError as e:
            self.ui.display_error(f"Failed to read cache: {e}")
            return 1
        self.ui.display_mapping("Cache", {
            "backend": store.backend.name,
            "entries": size,
            "max_entries": store.max_entries if store.max_entries is not None else "unbounded",
            "default_ttl_seconds": store.default_ttl,
            "serializer": store.serializer.name,
            "compression": "on" if store.compressor else "off",
        })
        return 0

    # --- Rate limiter ---

    async def handle_limiter_status(self) -> int:
        remaining = await self.rate_limiter.remaining()
        wait_time = await self.rate_limiter.wait_time()
        state_file = self.rate_limiter.state_file
        self.ui.display_mapping("Rate limiter", {
            "limit": self.rate_limiter.limit,
            "window_seconds": self.rate_limiter.window_seconds,
            "remaining": remaining,
            "next_admission_in_seconds": f"{wait_time:.2f}",
            "state_file": state_file.path if state_file else "none (in-memory)",
        })
        return 0

    async def handle_limiter_reset(self) -> int:
        try:
            await self.rate_limiter.reset()
        except ApiStashError as e:
            self.ui.display_error(f"Failed to reset rate limiter: {e}")
            return 1
        self.ui.display_info("Rate limiter window reset.")
        return 0
