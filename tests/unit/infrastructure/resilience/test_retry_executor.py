import asyncio
import pytest

from apistash.core.exceptions import ConfigurationError, ExhaustedRetries, TransportError
from apistash.domain.events.api_events import RetriesExhausted, RetryScheduled
from apistash.domain.models.common import BackoffStrategy
from apistash.infrastructure.resilience.retry_executor import RetryExecutor, next_delay


class FlakyOperation:
    """Fails ``failures`` times, then returns ``result``."""

    def __init__(self, failures: int, result="ok", error: Exception = None):
        self.failures = failures
        self.result = result
        self.error = error or TransportError("HTTP 503", status_code=503)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


@pytest.mark.parametrize("strategy, expected", [
    ("fixed", [1.0, 1.0, 1.0]),
    ("linear", [1.0, 2.0, 3.0]),
    ("exponential", [1.0, 2.0, 4.0]),
])
@pytest.mark.asyncio
async def test_delay_progressions(strategy, expected, sleep):
    executor = RetryExecutor(max_attempts=4, base_delay_seconds=1.0, backoff_strategy=strategy, sleep=sleep)
    outcome = await executor.retry(FlakyOperation(failures=10))
    assert outcome.delays == expected
    assert sleep.calls == expected


@pytest.mark.asyncio
async def test_success_after_failures(sleep):
    operation = FlakyOperation(failures=2, result={"id": 1})
    executor = RetryExecutor(max_attempts=3, sleep=sleep)
    outcome = await executor.retry(operation)
    assert outcome.succeeded is True
    assert outcome.value == {"id": 1}
    assert outcome.attempts == 3
    assert operation.calls == 3
    assert outcome.error is None


@pytest.mark.asyncio
async def test_first_attempt_success_never_sleeps(sleep):
    outcome = await RetryExecutor(sleep=sleep).retry(FlakyOperation(failures=0))
    assert outcome.attempts == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_exhaustion_returns_fallback_after_exactly_n_attempts(sleep):
    operation = FlakyOperation(failures=100)
    executor = RetryExecutor(max_attempts=3, fallback_value={"status": "degraded"}, sleep=sleep)
    outcome = await executor.retry(operation)

    assert operation.calls == 3
    assert outcome.succeeded is False
    assert outcome.used_fallback is True
    assert outcome.value == {"status": "degraded"}
    assert outcome.unwrap() == {"status": "degraded"}
    assert isinstance(outcome.error, ExhaustedRetries)


@pytest.mark.asyncio
async def test_none_is_a_valid_fallback(sleep):
    outcome = await RetryExecutor(max_attempts=1, fallback_value=None, sleep=sleep).retry(FlakyOperation(5))
    assert outcome.used_fallback is True
    assert outcome.unwrap() is None


@pytest.mark.asyncio
async def test_exhaustion_without_fallback_carries_last_error(sleep):
    last = TransportError("HTTP 500", status_code=500)
    executor = RetryExecutor(max_attempts=2, sleep=sleep)
    outcome = await executor.retry(FlakyOperation(failures=5, error=last))

    assert outcome.used_fallback is False
    assert outcome.error.attempts == 2
    assert outcome.error.last_error is last
    with pytest.raises(ExhaustedRetries):
        outcome.unwrap()


@pytest.mark.asyncio
async def test_non_retryable_error_ends_loop(sleep):
    executor = RetryExecutor(max_attempts=5, retryable_exceptions=(TransportError,), sleep=sleep)
    operation = FlakyOperation(failures=5, error=KeyError("bug"))
    outcome = await executor.retry(operation)
    assert operation.calls == 1
    assert isinstance(outcome.error.last_error, KeyError)
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_max_attempts_override_and_delay_cap(sleep):
    executor = RetryExecutor(max_attempts=2, base_delay_seconds=1.0, max_delay_seconds=3.0, sleep=sleep)
    outcome = await executor.retry(FlakyOperation(failures=10), max_attempts=5)
    assert outcome.attempts == 5
    assert outcome.delays == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_events_emitted(sleep):
    events = []
    executor = RetryExecutor(max_attempts=2, sleep=sleep, on_event=events.append)
    await executor.retry(FlakyOperation(failures=5))
    assert [type(e) for e in events] == [RetryScheduled, RetriesExhausted]
    assert events[0].attempt_number == 1
    assert events[1].fallback_used is False


@pytest.mark.asyncio
async def test_cancellation_propagates():
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.sleep(3600)

    executor = RetryExecutor(max_attempts=3, fallback_value="fb")
    task = asyncio.create_task(executor.retry(hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_unknown_strategy_falls_back_to_exponential():
    assert RetryExecutor(backoff_strategy="quadratic").backoff_strategy is BackoffStrategy.EXPONENTIAL


def test_invalid_attempts_rejected():
    with pytest.raises(ConfigurationError):
        RetryExecutor(max_attempts=0)


def test_next_delay():
    assert next_delay(2.0, 1.0, BackoffStrategy.FIXED) == 1.0
    assert next_delay(2.0, 1.0, BackoffStrategy.LINEAR) == 3.0
    assert next_delay(2.0, 1.0, BackoffStrategy.EXPONENTIAL) == 4.0
