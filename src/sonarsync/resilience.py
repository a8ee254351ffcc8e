"""Retry-with-backoff and circuit breaker wrapper for calls to external services.

One :class:`ResilienceExecutor` is meant to guard one external dependency
(Gitea or SonarQube), so a failing service only trips its own breaker.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from .errors import CircuitOpenError, OperationTimeoutError, SonarSyncError, ValidationError
from .retry import RetryPolicy, retry_call

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """States of the circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Thread-safe three-state circuit breaker.

    Closed: failures are counted, a success resets the count. Reaching
    ``failure_threshold`` consecutive failures opens the circuit.
    Open: every call is rejected until ``timeout`` seconds have passed since the
    last failure; the next call then moves to half-open.
    Half-open: one trial at a time is admitted. ``success_threshold`` trial
    successes close the circuit, any trial failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 1,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def consecutive_successes(self) -> int:
        with self._lock:
            return self._consecutive_successes

    @property
    def last_failure_time(self) -> Optional[float]:
        with self._lock:
            return self._last_failure_time

    def allow_request(self) -> bool:
        """Admit one call or raise :class:`CircuitOpenError`.

        Returns:
            ``True`` when the admitted call is the half-open trial.
        """
        with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed < self.timeout:
                    raise CircuitOpenError(self.name)
                logger.info("Circuit breaker half-open, probing service", extra={"service": self.name})
                self._state = CircuitState.HALF_OPEN
                self._consecutive_successes = 0
                self._trial_in_flight = False

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name)
                self._trial_in_flight = True
                return True
            return False

    def raise_if_open(self) -> None:
        """Raise :class:`CircuitOpenError` while the open timeout has not elapsed."""
        with self._lock:
            if self._state is CircuitState.OPEN and self._clock() - (self._last_failure_time or 0.0) < self.timeout:
                raise CircuitOpenError(self.name)

    def release_trial(self) -> None:
        """Free the half-open trial slot of a call that ended without an outcome."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._consecutive_successes += 1
                if self._consecutive_successes >= self.success_threshold:
                    logger.info("Circuit breaker closed", extra={"service": self.name})
                    self._state = CircuitState.CLOSED
                    self._consecutive_failures = 0
            else:
                self._consecutive_failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._consecutive_successes = 0
            self._last_failure_time = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._state = CircuitState.OPEN
                logger.warning("Circuit breaker re-opened after failed trial", extra={"service": self.name})
            elif self._consecutive_failures >= self.failure_threshold and self._state is CircuitState.CLOSED:
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit breaker opened",
                    extra={"service": self.name, "consecutive_failures": self._consecutive_failures},
                )


def _retry_unless_permanent(exc: BaseException) -> bool:
    if isinstance(exc, (ValidationError, CircuitOpenError)):
        return False
    return not (isinstance(exc, SonarSyncError) and exc.retryable is False)


class ResilienceExecutor:
    """Runs calls against one external service with retries and a circuit breaker."""

    def __init__(
        self,
        name: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_delay: float = 30.0,
        failure_threshold: int = 5,
        success_threshold: int = 1,
        timeout: float = 60.0,
        backoff_multiplier: float = 2.0,
        should_retry: Callable[[BaseException], bool] = _retry_unless_permanent,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the executor.

        Args:
            name: Service name used in log records and circuit-open errors.
            max_retries: Retries after the first attempt; ``max_retries + 1`` calls in total.
            retry_delay: Delay before the first retry in seconds.
            max_delay: Upper bound for any single retry delay.
            failure_threshold: Consecutive failures that open the circuit.
            success_threshold: Half-open successes needed to close it again.
            timeout: Seconds the circuit stays open after the last failure.
            backoff_multiplier: Factor applied to the delay after each retry.
            should_retry: Predicate deciding whether a failure may be retried.
            clock: Monotonic time source, replaceable in tests.
        """
        self.name = name
        self.policy = RetryPolicy(
            max_attempts=max_retries + 1,
            initial_delay=retry_delay,
            max_delay=max_delay,
            backoff_multiplier=backoff_multiplier,
        )
        self.breaker = CircuitBreaker(
            name,
            failure_threshold=failure_threshold,
            success_threshold=success_threshold,
            timeout=timeout,
            clock=clock,
        )
        self._should_retry = should_retry

    @classmethod
    def from_config(cls, name: str, config: Any) -> "ResilienceExecutor":
        """Build an executor from a :class:`~sonarsync.config.ResilienceConfig`."""
        return cls(
            name,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            max_delay=config.max_delay,
            failure_threshold=config.failure_threshold,
            success_threshold=config.success_threshold,
            timeout=config.breaker_timeout,
            backoff_multiplier=config.backoff_multiplier,
        )

    @property
    def state(self) -> CircuitState:
        return self.breaker.state

    def execute_with_retry(
        self,
        fn: Callable[..., T],
        *args: Any,
        cancel_event: Optional[threading.Event] = None,
        **kwargs: Any,
    ) -> T:
        """Call ``fn(*args, **kwargs)`` with retries, guarded by the circuit breaker.

        The breaker is consulted before every attempt, so an open circuit stops
        both new calls and the remaining retries of a call in progress.

        Raises:
            CircuitOpenError: If the circuit is open; ``fn`` is not called.
            RetryExhaustedError: If all ``max_retries + 1`` attempts failed.
            OperationCancelledError: If ``cancel_event`` was set during a back-off.
        """
        trial = False

        def admit(_attempt: int) -> None:
            nonlocal trial
            trial = self.breaker.allow_request()

        def attempt() -> T:
            try:
                return fn(*args, **kwargs)
            except Exception:
                raise
            except BaseException:
                # Interrupted: neither a success nor a failure is recorded.
                if trial:
                    self.breaker.release_trial()
                raise

        return retry_call(
            attempt,
            self.policy,
            self._should_retry,
            cancel_event=cancel_event,
            before_attempt=admit,
            before_wait=self.breaker.raise_if_open,
            on_success=self.breaker.record_success,
            on_failure=self._record_failure,
        )

    def _record_failure(self, exc: BaseException) -> None:
        # A permanent error is still an answer from a healthy service.
        if self._should_retry(exc):
            self.breaker.record_failure()
        else:
            self.breaker.record_success()

    def execute_with_timeout(self, fn: Callable[..., T], timeout: float, *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` on a worker thread and give up after ``timeout`` seconds.

        The worker is not stopped on timeout; it runs to completion in the
        background and its result is discarded.

        Raises:
            OperationTimeoutError: If ``fn`` did not finish in time.
        """
        return run_with_timeout(fn, timeout, self.name, *args, **kwargs)


def guarded_call(
    executor: Optional[ResilienceExecutor],
    fn: Callable[..., T],
    *args: Any,
    cancel_event: Optional[threading.Event] = None,
    **kwargs: Any,
) -> T:
    """Run ``fn`` through ``executor`` when one is configured, else call it directly."""
    if executor is None:
        return fn(*args, **kwargs)
    return executor.execute_with_retry(fn, *args, cancel_event=cancel_event, **kwargs)


def run_with_timeout(fn: Callable[..., T], timeout: float, name: str, *args: Any, **kwargs: Any) -> T:
    """Run ``fn`` on a worker thread, raising :class:`OperationTimeoutError` after ``timeout`` seconds.

    The worker is abandoned, not stopped, when the deadline passes.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{name}-timeout")
    future = pool.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        logger.warning("Operation timed out", extra={"service": name, "timeout_seconds": timeout})
        raise OperationTimeoutError(f"{name}: operation timed out after {timeout}s") from exc
    finally:
        pool.shutdown(wait=False)
