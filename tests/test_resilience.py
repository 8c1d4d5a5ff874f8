import asyncio

import httpx
import pytest

from launchpad.errors import CircuitOpenError, RemoteServiceError, TransientRemoteError
from launchpad.resilience import (
    BreakerRegistry,
    BreakerState,
    CircuitBreaker,
    RetryPolicy,
    call_with_retry,
    is_client_error,
    is_transient_error,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def http_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.test/resource")
    return httpx.HTTPStatusError(
        f"HTTP {status}", request=request, response=httpx.Response(status, request=request)
    )


class Flaky:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, *errors: Exception, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


def make_breaker(clock, **overrides) -> CircuitBreaker:
    options = {
        "failure_threshold": 3,
        "error_rate_threshold": 50,
        "volume_threshold": 100,
        "window_seconds": 30.0,
        "reset_timeout": 60.0,
        "call_timeout": None,
        "clock": clock,
    }
    options.update(overrides)
    return CircuitBreaker("railway", **options)


# === Error classification ===


def test_transient_and_client_error_classification():
    assert is_transient_error(ConnectionError())
    assert is_transient_error(TimeoutError())
    assert is_transient_error(TransientRemoteError("reset"))
    assert is_transient_error(http_error(503))
    assert is_transient_error(http_error(429))
    assert not is_transient_error(http_error(404))
    assert not is_transient_error(ValueError("bad"))
    assert not is_transient_error(CircuitOpenError("github"))

    assert is_client_error(http_error(400))
    assert is_client_error(RemoteServiceError("forbidden", status_code=403))
    assert not is_client_error(http_error(429))
    assert not is_client_error(http_error(500))


# === Circuit breaker ===


@pytest.mark.asyncio
async def test_breaker_opens_after_consecutive_failures(clock):
    breaker = make_breaker(clock)
    failing = Flaky(*[ConnectionError("refused")] * 3)

    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.fire(failing)

    assert breaker.state is BreakerState.OPEN

    # Open breaker rejects without calling the dependency
    with pytest.raises(CircuitOpenError):
        await breaker.fire(failing)
    assert failing.calls == 3


@pytest.mark.asyncio
async def test_breaker_opens_on_error_rate(clock):
    breaker = make_breaker(clock, failure_threshold=100, volume_threshold=4)

    async def step(fail: bool):
        async def fn():
            if fail:
                raise ConnectionError("refused")
            return "ok"

        return await breaker.fire(fn)

    await step(False)
    with pytest.raises(ConnectionError):
        await step(True)
    await step(False)
    assert breaker.state is BreakerState.CLOSED

    with pytest.raises(ConnectionError):
        await step(True)
    assert breaker.state is BreakerState.OPEN


@pytest.mark.asyncio
async def test_breaker_half_open_trial_success_closes(clock):
    breaker = make_breaker(clock)
    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.fire(Flaky(ConnectionError()))
    assert breaker.state is BreakerState.OPEN

    clock.now += 60
    assert breaker.state is BreakerState.HALF_OPEN

    assert await breaker.fire(Flaky()) == "ok"
    assert breaker.state is BreakerState.CLOSED
    assert breaker.snapshot()["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_breaker_half_open_trial_failure_reopens(clock):
    breaker = make_breaker(clock)
    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.fire(Flaky(ConnectionError()))

    clock.now += 61
    with pytest.raises(ConnectionError):
        await breaker.fire(Flaky(ConnectionError()))

    assert breaker.state is BreakerState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.fire(Flaky())


class Gated:
    """Blocks until ``release`` is set, then returns ``result``."""

    def __init__(self, result="ok"):
        self.result = result
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self):
        self.started.set()
        await self.release.wait()
        return self.result


@pytest.mark.asyncio
async def test_call_finishing_during_trial_does_not_admit_another(clock):
    breaker = make_breaker(clock)
    straggler = Gated()
    straggler_task = asyncio.create_task(breaker.fire(straggler))
    await straggler.started.wait()
    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.fire(Flaky(ConnectionError()))

    clock.now += 60
    trial = Gated()
    trial_task = asyncio.create_task(breaker.fire(trial))
    await trial.started.wait()

    straggler.release.set()
    assert await straggler_task == "ok"
    assert breaker.state is BreakerState.HALF_OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.fire(Flaky())

    trial.release.set()
    assert await trial_task == "ok"
    assert breaker.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_breaker_ignores_client_errors(clock):
    breaker = make_breaker(clock)

    for _ in range(10):
        with pytest.raises(httpx.HTTPStatusError):
            await breaker.fire(Flaky(http_error(404)))

    assert breaker.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_breaker_call_timeout_counts_as_failure(clock):
    breaker = make_breaker(clock, failure_threshold=1, call_timeout=0.01)

    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(TimeoutError):
        await breaker.fire(slow)
    assert breaker.state is BreakerState.OPEN


def test_registry_returns_one_breaker_per_name():
    registry = BreakerRegistry(failure_threshold=5, call_timeout=30.0)

    codegen = registry.get("codegen", call_timeout=180.0)
    assert registry.get("codegen") is codegen
    assert codegen.call_timeout == 180.0
    assert registry.get("github-api").call_timeout == 30.0

    status = registry.status()
    assert set(status) == {"codegen", "github-api"}
    assert status["codegen"]["state"] == "closed"


# === Retry ===


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_errors():
    fn = Flaky(ConnectionError("reset"), TransientRemoteError("502"))

    result = await call_with_retry(fn, max_retries=3, base_delay=0, jitter=0)

    assert result == "ok"
    assert fn.calls == 3


@pytest.mark.asyncio
async def test_retry_exhaustion_reraises_with_retry_count():
    fn = Flaky(*[ConnectionError("reset")] * 5)

    with pytest.raises(ConnectionError) as exc_info:
        await call_with_retry(fn, max_retries=2, base_delay=0, jitter=0)

    assert fn.calls == 3
    assert exc_info.value.retry_count == 2


@pytest.mark.asyncio
async def test_retry_does_not_repeat_non_transient_errors():
    fn = Flaky(http_error(422))

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        await RetryPolicy(max_retries=3, base_delay=0, jitter=0).call(fn)

    assert fn.calls == 1
    assert exc_info.value.retry_count == 0


@pytest.mark.asyncio
async def test_retry_stops_when_breaker_opens(clock):
    breaker = make_breaker(clock, failure_threshold=2)
    fn = Flaky(*[ConnectionError("reset")] * 10)

    with pytest.raises(CircuitOpenError):
        await call_with_retry(fn, breaker=breaker, max_retries=5, base_delay=0, jitter=0)

    assert fn.calls == 2
