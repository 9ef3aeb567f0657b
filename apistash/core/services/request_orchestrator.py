"""Request Orchestrator: rate limit, cache and retry around one logical call.

Sequence per call:
1. Ask the rate limiter for admission (fail fast, or wait in blocking mode).
2. If caching is enabled, serve a live cache entry without touching the
   transport.
3. Otherwise run the transport operation through the retry executor and
   cache a successful result; exhaustion yields the fallback (never
   cached) or an ExhaustedRetries error.
Batches apply the same sequence to each item independently.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from apistash.core.exceptions import (
    ApiStashError, ConfigurationError, DeadlineExceeded, PayloadError, RateLimitExceeded, StorageError
)
from apistash.core.services.cache_keys import derive_cache_key
from apistash.domain.events.api_events import (
    CacheHit, CacheMiss, EventListener, RequestRejected, RequestSucceeded, dispatch_event
)
from apistash.domain.interfaces.codec import PayloadCodec
from apistash.domain.interfaces.transport import Transport
from apistash.domain.models.common import NO_FALLBACK, BackoffStrategy, CacheKey, RateLimitPolicy
from apistash.domain.models.request import ApiRequest
from apistash.domain.models.results import CallResult, CallSource
from apistash.infrastructure.cache.cache_store import DEFAULT_TTL_SECONDS, CacheStore
from apistash.infrastructure.config import settings
from apistash.infrastructure.resilience.rate_limiter import RateLimiter
from apistash.infrastructure.resilience.retry_executor import RetryExecutor

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]
Interpreter = Callable[[Any], Any]


@dataclass
class OrchestratorConfig:
    """Recognized orchestrator options."""
    max_attempts: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_seconds: float = 1.0
    max_delay_seconds: Optional[float] = None
    cache_enabled: bool = True
    cache_ttl_seconds: float = DEFAULT_TTL_SECONDS
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    fallback_value: Any = NO_FALLBACK
    deadline_seconds: Optional[float] = None  # Per logical call; None = unbounded
    batch_concurrency: int = 1

    @classmethod
    def from_settings(cls) -> "OrchestratorConfig":
        """Builds the config from the configuration layer (YAML/.env/env)."""
        defaults = cls()
        strategy = settings.get_config("retry.backoff_strategy", defaults.backoff_strategy.value)
        try:
            backoff = BackoffStrategy.parse(strategy)
        except ValueError:
            logger.warning(f"Unknown backoff strategy '{strategy}' in config. Using exponential.")
            backoff = BackoffStrategy.EXPONENTIAL

        return cls(
            max_attempts=settings.get_int("retry.max_attempts", defaults.max_attempts),
            backoff_strategy=backoff,
            base_delay_seconds=settings.get_float("retry.base_delay_seconds", defaults.base_delay_seconds),
            max_delay_seconds=settings.get_float("retry.max_delay_seconds", None),
            cache_enabled=settings.get_bool("cache.enabled", defaults.cache_enabled),
            cache_ttl_seconds=settings.get_float("cache.ttl_seconds", defaults.cache_ttl_seconds),
            rate_limit=RateLimitPolicy(
                count=settings.get_int("rate_limit.count", defaults.rate_limit.count),
                window_seconds=settings.get_float("rate_limit.window_seconds", defaults.rate_limit.window_seconds),
                blocking=settings.get_bool("rate_limit.blocking", defaults.rate_limit.blocking),
            ),
            fallback_value=settings.get_config("retry.fallback_value", NO_FALLBACK),
            deadline_seconds=settings.get_float("request.deadline_seconds", None),
            batch_concurrency=settings.get_int("batch.concurrency", defaults.batch_concurrency),
        )


class _AttemptCounter:
    """Wraps an operation and counts how often it was started."""

    def __init__(self, operation: Operation):
        self._operation = operation
        self.count = 0

    async def __call__(self) -> Any:
        self.count += 1
        return await self._operation()


class RequestOrchestrator:
    """Composes admission control, caching and retries around one call."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        retry_executor: RetryExecutor,
        cache_store: Optional[CacheStore] = None,
        transport: Optional[Transport] = None,
        codec: Optional[PayloadCodec] = None,
        config: Optional[OrchestratorConfig] = None,
        on_event: Optional[EventListener] = None,
    ):
        """Initializes the RequestOrchestrator.

        Args:
            rate_limiter: Admission control shared by every call.
            retry_executor: Executes the transport operation with backoff.
            cache_store: Optional cache; None disables caching.
            transport: Needed by ``send``/``send_batch``; ``execute`` takes
                the operation directly.
            codec: Interprets payloads for requests with a response_format.
            config: Caching, deadline, blocking and batch options.
            on_event: Optional listener for call events.
        """
        self.rate_limiter = rate_limiter
        self.retry_executor = retry_executor
        self.cache_store = cache_store
        self.transport = transport
        self.codec = codec
        self.config = config or OrchestratorConfig()
        self._on_event = on_event
        if self.config.batch_concurrency < 1:
            raise ConfigurationError("batch_concurrency must be at least 1.")

        logger.info(
            f"RequestOrchestrator initialized: cache={'on' if self.caching_enabled else 'off'} "
            f"(ttl={self.config.cache_ttl_seconds}s), blocking_limiter={self.config.rate_limit.blocking}, "
            f"deadline={self.config.deadline_seconds}, batch_concurrency={self.config.batch_concurrency}"
        )

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        cache_store: Optional[CacheStore] = None,
        transport: Optional[Transport] = None,
        codec: Optional[PayloadCodec] = None,
        rate_limiter: Optional[RateLimiter] = None,
        on_event: Optional[EventListener] = None,
    ) -> "RequestOrchestrator":
        """Builds the limiter and retry executor described by ``config``."""
        limiter = rate_limiter or RateLimiter(
            limit=config.rate_limit.count,
            window_seconds=config.rate_limit.window_seconds,
            on_event=on_event,
        )
        executor = RetryExecutor(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_delay_seconds,
            backoff_strategy=config.backoff_strategy,
            fallback_value=config.fallback_value,
            max_delay_seconds=config.max_delay_seconds,
            on_event=on_event,
        )
        return cls(limiter, executor, cache_store=cache_store, transport=transport, codec=codec,
                   config=config, on_event=on_event)

    @property
    def caching_enabled(self) -> bool:
        return self.config.cache_enabled and self.cache_store is not None

    # --- Single call ---

    async def execute(
        self,
        cache_key: CacheKey,
        operation: Operation,
        use_cache: bool = True,
        parse: Optional[Interpreter] = None,
    ) -> CallResult:
        """Runs one orchestrated call.

        Args:
            cache_key: Identity of the call; equal keys share a cache slot.
            operation: Zero-argument coroutine function performing the call.
            use_cache: Per-call switch on top of the configured cache flag.
            parse: Optional function turning the raw result into the
                returned value. It may raise PayloadError, which counts as a
                failed attempt. The raw result is what gets cached.

        Returns:
            A CallResult from the transport, the cache or the fallback.

        Raises:
            RateLimitExceeded: Admission denied (non-blocking mode), or the
                blocking limiter gave up.
            ExhaustedRetries: Every attempt failed and no fallback is set.
            DeadlineExceeded: The deadline elapsed and no fallback is set.
        """
        counter = _AttemptCounter(operation)
        deadline = self.config.deadline_seconds
        if deadline is None:
            return await self._execute(cache_key, counter, use_cache, parse)

        try:
            return await asyncio.wait_for(self._execute(cache_key, counter, use_cache, parse), timeout=deadline)
        except asyncio.TimeoutError:
            error = DeadlineExceeded(deadline, attempts=counter.count)
            logger.error(f"Call {cache_key[:16]} exceeded its {deadline}s deadline after {counter.count} attempt(s).")
            if self.retry_executor.has_fallback:
                return CallResult(value=self.retry_executor.fallback_value, source=CallSource.FALLBACK,
                                  attempts=counter.count, error=error)
            raise error from None

    async def _admit(self, cache_key: CacheKey) -> None:
        if self.config.rate_limit.blocking:
            await self.rate_limiter.acquire()
            return
        if not await self.rate_limiter.allow_request():
            dispatch_event(RequestRejected(cache_key=cache_key), self._on_event)
            retry_after = await self.rate_limiter.wait_time()
            raise RateLimitExceeded(retry_after=retry_after)

    async def _from_cache(self, cache_key: CacheKey, interpret: Optional[Interpreter]) -> Optional[CallResult]:
        entry = await self.cache_store.get_entry(cache_key)
        if entry is None:
            dispatch_event(CacheMiss(cache_key=cache_key), self._on_event)
            return None
        value = entry.value
        if interpret is not None:
            try:
                value = interpret(value)
            except PayloadError as e:
                logger.warning(f"Cached payload for {cache_key[:16]} no longer parses: {e}. Clearing.")
                await self.cache_store.clear(cache_key)
                dispatch_event(CacheMiss(cache_key=cache_key), self._on_event)
                return None
        dispatch_event(CacheHit(cache_key=cache_key), self._on_event)
        return CallResult(value=value, source=CallSource.CACHE, attempts=0)

    async def _execute(
        self,
        cache_key: CacheKey,
        operation: _AttemptCounter,
        use_cache: bool,
        interpret: Optional[Interpreter],
    ) -> CallResult:
        await self._admit(cache_key)

        caching = use_cache and self.caching_enabled
        if caching:
            cached = await self._from_cache(cache_key, interpret)
            if cached is not None:
                return cached

        async def attempt() -> Any:
            raw = await operation()
            return raw, (interpret(raw) if interpret is not None else raw)

        start_time = time.perf_counter()
        outcome = await self.retry_executor.retry(attempt)

        if outcome.succeeded:
            raw, value = outcome.value
            if caching:
                try:
                    await self.cache_store.store(cache_key, raw, self.config.cache_ttl_seconds)
                except StorageError as e:
                    # The response is still good; only the cache write is lost
                    logger.error(f"Failed to cache response for {cache_key[:16]}: {e}")
            latency_ms = (time.perf_counter() - start_time) * 1000
            dispatch_event(RequestSucceeded(cache_key=cache_key, attempts=outcome.attempts, latency_ms=latency_ms),
                           self._on_event)
            return CallResult(value=value, source=CallSource.TRANSPORT, attempts=outcome.attempts)

        if outcome.used_fallback:
            return CallResult(value=outcome.value, source=CallSource.FALLBACK,
                              attempts=outcome.attempts, error=outcome.error)
        raise outcome.error

    # --- Transport-backed calls ---

    def _interpreter(self, fmt: Optional[str]) -> Optional[Interpreter]:
        if not fmt:
            return None
        if self.codec is None:
            raise ConfigurationError(f"A payload codec is required to interpret '{fmt}' responses.")
        codec = self.codec

        def interpret(raw: Any) -> Any:
            ok = codec.validate(raw, fmt)
            if not ok:
                raise PayloadError(f"Response is not valid {fmt}.")
            return codec.parse(raw, fmt)

        return interpret

    async def send(self, request: ApiRequest) -> CallResult:
        """Performs ``request`` through the transport with the full policy.

        Raises:
            ConfigurationError: If no transport is configured.
            RateLimitExceeded, ExhaustedRetries, DeadlineExceeded: See ``execute``.
        """
        if self.transport is None:
            raise ConfigurationError("RequestOrchestrator.send requires a transport.")
        transport = self.transport
        cache_key = derive_cache_key(request)

        async def perform() -> Any:
            return await transport.send(
                request.method, request.url, params=request.params, headers=request.headers, body=request.body
            )

        logger.debug(f"Sending {request.method} {request.url} (key {cache_key[:16]})")
        return await self.execute(cache_key, perform, use_cache=request.use_cache,
                                  parse=self._interpreter(request.response_format))

    async def send_batch(self, requests: Sequence[ApiRequest], concurrency: Optional[int] = None) -> List[CallResult]:
        """Sends every request independently and returns results in input order.

        A failing item yields a CallResult with source FAILED and the error;
        it never aborts the other items.

        Args:
            requests: The requests to send.
            concurrency: Maximum items in flight (configured value if None).
        """
        limit = self.config.batch_concurrency if concurrency is None else concurrency
        if limit < 1:
            raise ConfigurationError("Batch concurrency must be at least 1.")
        semaphore = asyncio.Semaphore(limit)

        async def run_one(index: int, request: ApiRequest) -> CallResult:
            async with semaphore:
                try:
                    return await self.send(request)
                except ApiStashError as e:
                    logger.warning(f"Batch item {index} ({request.method} {request.url}) failed: {e}")
                    return CallResult(source=CallSource.FAILED, attempts=getattr(e, "attempts", 0), error=e)

        logger.info(f"Sending batch of {len(requests)} request(s) with concurrency {limit}.")
        return list(await asyncio.gather(*(run_one(i, r) for i, r in enumerate(requests))))
