import asyncio
import json
import pytest

from apistash.core.exceptions import (
    ConfigurationError, DeadlineExceeded, ExhaustedRetries, RateLimitExceeded, StorageError,
    TransportError
)
from apistash.core.services.cache_keys import derive_cache_key
from apistash.core.services.request_orchestrator import OrchestratorConfig, RequestOrchestrator
from apistash.domain.events.api_events import CacheHit, CacheMiss, RequestRejected, RequestSucceeded
from apistash.domain.interfaces.transport import Transport
from apistash.domain.models.common import NO_FALLBACK, CacheKey, RateLimitPolicy
from apistash.domain.models.request import ApiRequest
from apistash.domain.models.results import CallSource
from apistash.infrastructure.cache.backends.memory import MemoryBackend
from apistash.infrastructure.cache.cache_store import CacheStore
from apistash.infrastructure.codec.payload_codec import DefaultPayloadCodec
from apistash.infrastructure.config.settings import set_config_for_testing
from apistash.infrastructure.resilience.rate_limiter import RateLimiter
from apistash.infrastructure.resilience.retry_executor import RetryExecutor


class FakeTransport(Transport):
    """Replays scripted responses; an Exception entry is raised instead."""

    def __init__(self, responses=None, default=b'{"ok": true}'):
        self.responses = list(responses or [])
        self.default = default
        self.calls = []

    async def send(self, method, url, params=None, headers=None, body=None):
        self.calls.append((method, url, params, headers, body))
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


class CountingOperation:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def cache_store(clock):
    return CacheStore(MemoryBackend(), max_entries=20, clock=clock)


def build(clock, sleep, cache_store=None, transport=None, limit=100, blocking=False,
          fallback=NO_FALLBACK, max_attempts=3, deadline=None, events=None, batch_concurrency=1):
    config = OrchestratorConfig(
        max_attempts=max_attempts,
        cache_ttl_seconds=3600,
        rate_limit=RateLimitPolicy(count=limit, window_seconds=60, blocking=blocking),
        fallback_value=fallback,
        deadline_seconds=deadline,
        batch_concurrency=batch_concurrency,
    )
    limiter = RateLimiter(limit=limit, window_seconds=60, clock=clock, sleep=sleep)
    executor = RetryExecutor(max_attempts=max_attempts, base_delay_seconds=1.0, fallback_value=fallback, sleep=sleep)
    return RequestOrchestrator(
        limiter, executor, cache_store=cache_store, transport=transport, codec=DefaultPayloadCodec(),
        config=config, on_event=events.append if events is not None else None,
    )


@pytest.mark.asyncio
async def test_cached_call_is_idempotent(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store)
    operation = CountingOperation([{"user": 1}])

    first = await orchestrator.execute(CacheKey("k"), operation)
    second = await orchestrator.execute(CacheKey("k"), operation)

    assert first.value == second.value == {"user": 1}
    assert first.source is CallSource.TRANSPORT
    assert second.source is CallSource.CACHE
    assert second.attempts == 0
    assert operation.calls == 1


@pytest.mark.asyncio
async def test_cache_disabled_per_call_and_globally(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store)
    operation = CountingOperation(["v"])
    await orchestrator.execute(CacheKey("k"), operation, use_cache=False)
    await orchestrator.execute(CacheKey("k"), operation, use_cache=False)
    assert operation.calls == 2
    assert await cache_store.size() == 0

    no_cache = build(clock, sleep, cache_store=None)
    await no_cache.execute(CacheKey("k"), operation)
    await no_cache.execute(CacheKey("k"), operation)
    assert operation.calls == 4


@pytest.mark.asyncio
async def test_rate_limited_call_skips_cache_and_transport(clock, sleep, cache_store, mocker):
    events = []
    orchestrator = build(clock, sleep, cache_store, limit=1, events=events)
    operation = CountingOperation(["v"])
    await orchestrator.execute(CacheKey("k"), operation)

    get_entry = mocker.spy(cache_store, "get_entry")
    with pytest.raises(RateLimitExceeded) as exc_info:
        await orchestrator.execute(CacheKey("k"), operation)

    assert exc_info.value.retry_after == pytest.approx(60.0)
    assert get_entry.call_count == 0
    assert operation.calls == 1
    assert any(isinstance(e, RequestRejected) for e in events)


@pytest.mark.asyncio
async def test_cache_hit_still_consumes_admission(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store, limit=2)
    operation = CountingOperation(["v"])
    await orchestrator.execute(CacheKey("k"), operation)
    await orchestrator.execute(CacheKey("k"), operation)
    with pytest.raises(RateLimitExceeded):
        await orchestrator.execute(CacheKey("k"), operation)


@pytest.mark.asyncio
async def test_blocking_limiter_waits_instead_of_failing(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store, limit=1, blocking=True)
    operation = CountingOperation(["v"])
    await orchestrator.execute(CacheKey("a"), operation)
    result = await orchestrator.execute(CacheKey("b"), operation)
    assert result.source is CallSource.TRANSPORT
    assert sleep.calls == [pytest.approx(60.0)]


@pytest.mark.asyncio
async def test_transient_failures_are_retried_then_cached(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store)
    operation = CountingOperation([TransportError("503"), TransportError("503"), "good"])

    result = await orchestrator.execute(CacheKey("k"), operation)

    assert result.value == "good"
    assert result.attempts == 3
    assert sleep.calls == [1.0, 2.0]
    assert await cache_store.retrieve(CacheKey("k")) == "good"


@pytest.mark.asyncio
async def test_fallback_is_returned_but_never_cached(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store, fallback={"status": "unavailable"})
    operation = CountingOperation([TransportError("down")])

    result = await orchestrator.execute(CacheKey("k"), operation)

    assert result.source is CallSource.FALLBACK
    assert result.value == {"status": "unavailable"}
    assert result.ok is False
    assert isinstance(result.error, ExhaustedRetries)
    assert operation.calls == 3
    assert await cache_store.exists(CacheKey("k")) is False


@pytest.mark.asyncio
async def test_exhaustion_without_fallback_raises(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store, max_attempts=2)
    with pytest.raises(ExhaustedRetries) as exc_info:
        await orchestrator.execute(CacheKey("k"), CountingOperation([TransportError("down")]))
    assert exc_info.value.attempts == 2


@pytest.mark.asyncio
async def test_cache_write_failure_still_returns_response(clock, sleep, cache_store, mocker):
    mocker.patch.object(cache_store, "store", side_effect=StorageError("disk full"))
    orchestrator = build(clock, sleep, cache_store)
    result = await orchestrator.execute(CacheKey("k"), CountingOperation(["fresh"]))
    assert result.value == "fresh"
    assert result.source is CallSource.TRANSPORT


@pytest.mark.asyncio
async def test_events_for_miss_success_and_hit(clock, sleep, cache_store):
    events = []
    orchestrator = build(clock, sleep, cache_store, events=events)
    operation = CountingOperation(["v"])
    await orchestrator.execute(CacheKey("k"), operation)
    await orchestrator.execute(CacheKey("k"), operation)
    assert [type(e) for e in events] == [CacheMiss, RequestSucceeded, CacheHit]


@pytest.mark.asyncio
async def test_deadline_without_fallback_raises(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store, deadline=0.05)

    async def slow():
        await asyncio.sleep(10)

    with pytest.raises(DeadlineExceeded) as exc_info:
        await orchestrator.execute(CacheKey("k"), slow)
    assert exc_info.value.attempts == 1
    assert isinstance(exc_info.value, ExhaustedRetries)


@pytest.mark.asyncio
async def test_deadline_with_fallback_returns_fallback(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store, deadline=0.05, fallback="late")

    async def slow():
        await asyncio.sleep(10)

    result = await orchestrator.execute(CacheKey("k"), slow)
    assert result.source is CallSource.FALLBACK
    assert result.value == "late"
    assert isinstance(result.error, DeadlineExceeded)
    assert await cache_store.size() == 0


@pytest.mark.asyncio
async def test_send_derives_key_and_uses_transport(clock, sleep, cache_store):
    transport = FakeTransport()
    orchestrator = build(clock, sleep, cache_store, transport=transport)
    request = ApiRequest(url="https://api.example.com/users", params={"page": 1}, headers={"Accept": "json"})

    first = await orchestrator.send(request)
    second = await orchestrator.send(ApiRequest(url="https://api.example.com/users", params={"page": 1},
                                                headers={"Accept": "json"}))

    assert first.value == b'{"ok": true}'
    assert second.from_cache is True
    assert transport.calls == [("GET", "https://api.example.com/users", {"page": 1}, {"Accept": "json"}, None)]
    assert await cache_store.exists(derive_cache_key(request)) is True


@pytest.mark.asyncio
async def test_send_with_json_format_parses_and_caches_raw(clock, sleep, cache_store):
    transport = FakeTransport(responses=[b'{"name": "John Doe"}'])
    orchestrator = build(clock, sleep, cache_store, transport=transport)
    request = ApiRequest(url="https://api.example.com/u/1", response_format="json")

    miss = await orchestrator.send(request)
    hit = await orchestrator.send(request)

    assert miss.value == {"name": "John Doe"}
    assert hit.value == {"name": "John Doe"}
    assert hit.from_cache is True
    assert await cache_store.retrieve(derive_cache_key(request)) == b'{"name": "John Doe"}'


@pytest.mark.asyncio
async def test_invalid_payload_is_retried(clock, sleep, cache_store):
    transport = FakeTransport(responses=[b"<html>oops</html>", json.dumps({"a": 1}).encode()])
    orchestrator = build(clock, sleep, cache_store, transport=transport)
    result = await orchestrator.send(ApiRequest(url="https://x", response_format="json"))
    assert result.value == {"a": 1}
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_cached_payload_that_no_longer_parses_is_refetched(clock, sleep, cache_store):
    transport = FakeTransport(responses=[b'{"fresh": true}'])
    orchestrator = build(clock, sleep, cache_store, transport=transport)
    request = ApiRequest(url="https://x", response_format="json")
    await cache_store.store(derive_cache_key(request), b"not json")

    result = await orchestrator.send(request)

    assert result.source is CallSource.TRANSPORT
    assert result.value == {"fresh": True}
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_send_without_transport_is_a_configuration_error(clock, sleep):
    orchestrator = build(clock, sleep)
    with pytest.raises(ConfigurationError):
        await orchestrator.send(ApiRequest(url="https://x"))


@pytest.mark.asyncio
async def test_batch_preserves_order_and_isolates_failures(clock, sleep, cache_store):
    class RoutingTransport(FakeTransport):
        async def send(self, method, url, params=None, headers=None, body=None):
            self.calls.append(url)
            if url.endswith("/bad"):
                raise TransportError("HTTP 500", status_code=500)
            return url.encode()

    orchestrator = build(clock, sleep, cache_store, transport=RoutingTransport(), max_attempts=2,
                         batch_concurrency=3)
    requests = [ApiRequest(url=f"https://api/{name}") for name in ("a", "bad", "c")]

    results = await orchestrator.send_batch(requests)

    assert [r.source for r in results] == [CallSource.TRANSPORT, CallSource.FAILED, CallSource.TRANSPORT]
    assert results[0].value == b"https://api/a"
    assert results[2].value == b"https://api/c"
    assert isinstance(results[1].error, ExhaustedRetries)
    assert results[1].attempts == 2


@pytest.mark.asyncio
async def test_batch_captures_rate_limit_denials(clock, sleep, cache_store):
    orchestrator = build(clock, sleep, cache_store, transport=FakeTransport(), limit=2)
    requests = [ApiRequest(url=f"https://api/{i}") for i in range(3)]
    results = await orchestrator.send_batch(requests)
    assert [r.ok for r in results] == [True, True, False]
    assert isinstance(results[2].error, RateLimitExceeded)


@pytest.mark.asyncio
async def test_batch_respects_concurrency_limit(clock, sleep):
    in_flight = 0
    peak = 0

    class SlowTransport(FakeTransport):
        async def send(self, method, url, params=None, headers=None, body=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return b"ok"

    orchestrator = build(clock, sleep, transport=SlowTransport())
    await orchestrator.send_batch([ApiRequest(url=f"https://api/{i}") for i in range(6)], concurrency=2)
    assert peak == 2


def test_config_from_settings():
    set_config_for_testing({
        "retry.max_attempts": 5,
        "retry.backoff_strategy": "linear",
        "retry.fallback_value": "n/a",
        "rate_limit.count": "10",
        "rate_limit.blocking": "true",
        "cache.ttl_seconds": 120,
        "request.deadline_seconds": 2.5,
    })
    config = OrchestratorConfig.from_settings()
    assert config.max_attempts == 5
    assert config.backoff_strategy.value == "linear"
    assert config.fallback_value == "n/a"
    assert config.rate_limit == RateLimitPolicy(count=10, window_seconds=60.0, blocking=True)
    assert config.cache_ttl_seconds == 120.0
    assert config.deadline_seconds == 2.5


def test_config_from_settings_defaults():
    config = OrchestratorConfig.from_settings()
    assert config.fallback_value is NO_FALLBACK
    assert config.deadline_seconds is None
    assert config.batch_concurrency == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrency", [0, -1])
async def test_batch_rejects_non_positive_concurrency(clock, sleep, concurrency):
    orchestrator = build(clock, sleep, transport=FakeTransport())
    with pytest.raises(ConfigurationError):
        await orchestrator.send_batch([ApiRequest(url="https://api/a")], concurrency=concurrency)


@pytest.mark.asyncio
async def test_deadline_bounds_blocking_limiter_wait(clock, cache_store):
    config = OrchestratorConfig(
        rate_limit=RateLimitPolicy(count=1, window_seconds=60, blocking=True),
        deadline_seconds=0.05,
    )
    # Real sleep, so the limiter genuinely waits on the full window
    limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
    orchestrator = RequestOrchestrator(limiter, RetryExecutor(), cache_store=cache_store, config=config)
    operation = CountingOperation(["v"])

    assert (await orchestrator.execute(CacheKey("first"), operation)).value == "v"
    with pytest.raises(DeadlineExceeded) as exc_info:
        await orchestrator.execute(CacheKey("second"), operation)

    assert exc_info.value.attempts == 0
    assert operation.calls == 1
    assert await limiter.remaining() == 0
