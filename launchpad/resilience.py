"""Circuit breaker and bounded retry around remote calls.

A breaker guards one remote dependency (``railway``, ``cloudflare``,
``github``, ``codegen``). Retries wrap the breaker at each call site:

    result = await retry_policy.call(client.get, url, breaker=registry.get("github"))

Only transient errors are retried. Client errors (4xx) pass through the
breaker without counting as failures.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
import time
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .config import Settings
from .errors import CircuitOpenError, RemoteServiceError, TransientRemoteError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, RemoteServiceError):
        return error.status_code
    return None


def is_client_error(error: BaseException) -> bool:
    """4xx responses other than 429 are the caller's fault, not the dependency's."""
    code = _status_code(error)
    return code is not None and 400 <= code < 500 and code != 429


def is_transient_error(error: BaseException) -> bool:
    """Timeouts, connection resets, 5xx and 429 may succeed when repeated."""
    if isinstance(error, CircuitOpenError):
        return False
    if isinstance(error, TransientRemoteError | TimeoutError | ConnectionError):
        return True
    if isinstance(error, httpx.TimeoutException | httpx.TransportError):
        return True
    code = _status_code(error)
    return code is not None and (code >= 500 or code == 429)


class CircuitBreaker:
    """Closed / open / half-open breaker for a single remote dependency.

    Opens after ``failure_threshold`` consecutive failures, or when at least
    ``volume_threshold`` calls inside the rolling window failed at a rate of
    ``error_rate_threshold`` percent or more. After ``reset_timeout`` seconds
    one trial call is let through.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        error_rate_threshold: int = 50,
        volume_threshold: int = 5,
        window_seconds: float = 30.0,
        reset_timeout: float = 60.0,
        call_timeout: float | None = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.error_rate_threshold = error_rate_threshold
        self.volume_threshold = volume_threshold
        self.window_seconds = window_seconds
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._opened_at = 0.0
        self._consecutive_failures = 0
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        if self._state is BreakerState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            return BreakerState.HALF_OPEN
        return self._state

    async def fire(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Invoke ``fn`` unless the breaker is open.

        Half-open admits a single trial call. Calls that started before the
        breaker opened may still finish during the trial; they neither decide
        it nor clear the trial flag.
        """
        state = self.state
        if state is BreakerState.OPEN:
            raise CircuitOpenError(self.name)
        is_trial = state is BreakerState.HALF_OPEN
        if is_trial:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = True
            logger.info("circuit_breaker_half_open", breaker=self.name)

        try:
            if self.call_timeout is not None:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.call_timeout)
            else:
                result = await fn(*args, **kwargs)
        except Exception as e:
            if is_client_error(e):
                self._record_success(is_trial)
            else:
                self._record_failure(e, is_trial)
            raise
        else:
            self._record_success(is_trial)
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    def _prune(self, now: float) -> None:
        while self._outcomes and now - self._outcomes[0][0] > self.window_seconds:
            self._outcomes.popleft()

    def _failure_rate(self) -> float | None:
        total = len(self._outcomes)
        if total < self.volume_threshold:
            return None
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures * 100.0 / total

    def _record_success(self, trial: bool = False) -> None:
        now = self._clock()
        if self._state is BreakerState.HALF_OPEN:
            if trial:
                self._close()
            return
        self._consecutive_failures = 0
        self._outcomes.append((now, True))
        self._prune(now)

    def _record_failure(self, error: BaseException, trial: bool = False) -> None:
        now = self._clock()
        if self._state is BreakerState.HALF_OPEN:
            if trial:
                self._open(now, reason="trial_failed", error=error)
            return
        self._consecutive_failures += 1
        self._outcomes.append((now, False))
        self._prune(now)

        if self._consecutive_failures >= self.failure_threshold:
            self._open(now, reason="consecutive_failures", error=error)
            return
        rate = self._failure_rate()
        if rate is not None and rate >= self.error_rate_threshold:
            self._open(now, reason="error_rate", error=error)

    def _open(self, now: float, reason: str, error: BaseException) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = now
        logger.warning(
            "circuit_breaker_opened",
            breaker=self.name,
            reason=reason,
            consecutive_failures=self._consecutive_failures,
            error=str(error),
            error_type=type(error).__name__,
        )

    def _close(self) -> None:
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._outcomes.clear()
        logger.info("circuit_breaker_closed", breaker=self.name)

    def reset(self) -> None:
        """Force the breaker closed."""
        self._close()
        self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        self._prune(self._clock())
        return {
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "window_calls": len(self._outcomes),
            "window_failures": sum(1 for _, ok in self._outcomes if not ok),
        }


class BreakerRegistry:
    """One breaker per remote dependency, created lazily with shared defaults.

    Constructed once per process and passed to every adapter that needs it.
    """

    def __init__(self, **defaults: Any):
        self._defaults = defaults
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> BreakerRegistry:
        return cls(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            error_rate_threshold=settings.circuit_breaker_error_threshold,
            volume_threshold=settings.circuit_breaker_volume_threshold,
            window_seconds=settings.circuit_breaker_window,
            reset_timeout=settings.circuit_breaker_reset_timeout,
            call_timeout=settings.circuit_breaker_timeout,
        )

    def get(self, name: str, **overrides: Any) -> CircuitBreaker:
        """Return the breaker for ``name``. ``overrides`` apply only on first creation."""
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, **{**self._defaults, **overrides})
        return self._breakers[name]

    def status(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    def reset(self, name: str | None = None) -> None:
        targets = [self._breakers[name]] if name else list(self._breakers.values())
        for breaker in targets:
            breaker.reset()
        logger.info("circuit_breakers_reset", breaker=name or "all")


def _log_retry(name: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "remote_call_retrying",
            call=name,
            attempt=retry_state.attempt_number,
            delay=round(retry_state.upcoming_sleep, 3),
            error=str(error),
            error_type=type(error).__name__,
        )

    return before_sleep


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    breaker: CircuitBreaker | None = None,
    max_retries: int = 3,
    base_delay: float = 1.0,
    jitter: float = 0.5,
    name: str = "remote_call",
    **kwargs: Any,
) -> T:
    """Call ``fn`` (through ``breaker`` if given), retrying transient errors.

    Delay before retry ``n`` (0-based) is ``base_delay * 2**n`` plus up to
    ``jitter`` seconds. The error that ends the call is re-raised unchanged
    with a ``retry_count`` attribute.
    """
    retries = 0
    wait = wait_exponential(multiplier=base_delay, exp_base=2)
    if jitter > 0:
        wait = wait + wait_random(0, jitter)

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait,
            retry=retry_if_exception(is_transient_error),
            before_sleep=_log_retry(name),
            reraise=True,
        ):
            retries = attempt.retry_state.attempt_number - 1
            with attempt:
                if breaker is not None:
                    result = await breaker.fire(fn, *args, **kwargs)
                else:
                    result = await fn(*args, **kwargs)
    except Exception as e:
        e.retry_count = retries  # type: ignore[attr-defined]
        if retries:
            logger.error(
                "remote_call_retries_exhausted",
                call=name,
                retry_count=retries,
                error=str(e),
                error_type=type(e).__name__,
            )
        raise
    return result


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for one call site."""

    max_retries: int = 3
    base_delay: float = 1.0
    jitter: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(max_retries=settings.retry_max_retries, base_delay=settings.retry_base_delay)

    async def call(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        breaker: CircuitBreaker | None = None,
        name: str = "remote_call",
        **kwargs: Any,
    ) -> T:
        return await call_with_retry(
            fn,
            *args,
            breaker=breaker,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            jitter=self.jitter,
            name=name,
            **kwargs,
        )
