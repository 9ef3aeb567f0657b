"""Service for executing operations with automatic retries.

Re-invokes an opaque zero-argument coroutine function up to N times with a
fixed, linear or exponential backoff between attempts. Failures never
escape ``retry``: they become a later success, the configured fallback
value, or an explicit terminal failure carried by the returned outcome.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from apistash.core.exceptions import ConfigurationError, ExhaustedRetries
from apistash.domain.events.api_events import (
    EventListener, RetriesExhausted, RetryScheduled, dispatch_event
)
from apistash.domain.models.common import NO_FALLBACK, BackoffStrategy
from apistash.domain.models.results import RetryOutcome

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0

Operation = Callable[[], Awaitable[Any]]


def next_delay(current: float, base: float, strategy: BackoffStrategy) -> float:
    """Computes the delay before the attempt after next.

    fixed: unchanged; linear: grows by ``base``; exponential: doubles.
    """
    if strategy is BackoffStrategy.LINEAR:
        return current + base
    if strategy is BackoffStrategy.EXPONENTIAL:
        return current * 2
    return base


class RetryExecutor:
    """Runs an operation until it succeeds or the attempts run out."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        backoff_strategy: Any = BackoffStrategy.EXPONENTIAL,
        fallback_value: Any = NO_FALLBACK,
        max_delay_seconds: Optional[float] = None,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_event: Optional[EventListener] = None,
    ):
        """Initializes the RetryExecutor.

        Args:
            max_attempts: Attempts per ``retry`` call (at least 1).
            base_delay_seconds: Delay before the second attempt, and the step
                for linear backoff.
            backoff_strategy: 'fixed', 'linear' or 'exponential'. Unknown
                names fall back to exponential.
            fallback_value: Value returned once attempts are exhausted.
                Leave unset to get a terminal failure instead.
            max_delay_seconds: Optional cap on any single delay.
            retryable_exceptions: Failures worth another attempt. Any other
                exception ends the loop at once.
            sleep: Coroutine used to wait between attempts.
            on_event: Optional listener for retry events.
        """
        if max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1.")
        if base_delay_seconds < 0:
            raise ConfigurationError("base_delay_seconds must not be negative.")

        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.backoff_strategy = self._parse_strategy(backoff_strategy)
        self.fallback_value = fallback_value
        self.max_delay_seconds = max_delay_seconds
        self.retryable_exceptions = retryable_exceptions
        self._sleep = sleep
        self._on_event = on_event

        logger.info(
            f"RetryExecutor initialized: max_attempts={max_attempts}, "
            f"base_delay={base_delay_seconds}s, strategy={self.backoff_strategy.value}, "
            f"fallback={'set' if self.has_fallback else 'None'}"
        )

    @staticmethod
    def _parse_strategy(value: Any) -> BackoffStrategy:
        try:
            return BackoffStrategy.parse(value)
        except ValueError:
            logger.warning(f"Unknown backoff strategy '{value}'. Using exponential.")
            return BackoffStrategy.EXPONENTIAL

    @property
    def has_fallback(self) -> bool:
        return self.fallback_value is not NO_FALLBACK

    def _cap(self, delay: float) -> float:
        if self.max_delay_seconds is not None:
            return min(delay, self.max_delay_seconds)
        return delay

    async def retry(self, operation: Operation, max_attempts: Optional[int] = None) -> RetryOutcome:
        """Runs ``operation`` up to ``max_attempts`` times.

        Args:
            operation: Zero-argument coroutine function. Its nature (network
                call, cache write, both) is irrelevant here.
            max_attempts: Overrides the configured attempt count.

        Returns:
            A RetryOutcome. On success ``value`` is the operation's result.
            On exhaustion ``value`` is the fallback (``used_fallback`` True)
            or ``error`` carries an ExhaustedRetries with the last failure.
            Task cancellation is not a failure and propagates.
        """
        attempts_allowed = self.max_attempts if max_attempts is None else max_attempts
        if attempts_allowed < 1:
            raise ConfigurationError("max_attempts must be at least 1.")

        delay = self._cap(self.base_delay_seconds)
        outcome = RetryOutcome()
        last_exception: Optional[BaseException] = None

        for attempt in range(1, attempts_allowed + 1):
            outcome.attempts = attempt
            try:
                result = await operation()
                if attempt > 1:
                    logger.debug(f"Retry succeeded on attempt {attempt}")
                outcome.value = result
                outcome.succeeded = True
                return outcome
            except self.retryable_exceptions as e:
                last_exception = e
                logger.warning(f"Attempt {attempt}/{attempts_allowed} failed: {type(e).__name__}: {e}")
            except Exception as e:
                last_exception = e
                logger.error(f"Non-retryable error on attempt {attempt}: {type(e).__name__}: {e}", exc_info=True)
                break

            if attempt < attempts_allowed:
                dispatch_event(
                    RetryScheduled(attempt_number=attempt, delay_seconds=delay, error_type=type(last_exception).__name__),
                    self._on_event,
                )
                await self._sleep(delay)
                outcome.delays.append(delay)
                delay = self._cap(next_delay(delay, self.base_delay_seconds, self.backoff_strategy))

        return self._exhausted(outcome, last_exception)

    def _exhausted(self, outcome: RetryOutcome, last_exception: Optional[BaseException]) -> RetryOutcome:
        dispatch_event(
            RetriesExhausted(
                attempts=outcome.attempts,
                error_type=type(last_exception).__name__,
                error_message=str(last_exception),
                fallback_used=self.has_fallback,
            ),
            self._on_event,
        )
        outcome.error = ExhaustedRetries(outcome.attempts, last_exception)
        if self.has_fallback:
            logger.error(f"All {outcome.attempts} attempt(s) failed. Returning fallback response.")
            outcome.value = self.fallback_value
            outcome.used_fallback = True
        else:
            logger.error(f"All {outcome.attempts} attempt(s) failed and no fallback is configured. "
                         f"Last error: {last_exception}")
        return outcome
