"""Retry policy and backoff loop shared by the resilience executor and scan requests.

Retryability is decided by error kind first: any :class:`SonarSyncError` with a
boolean ``retryable`` flag answers for itself, and ``requests`` transport errors
are always transient. Only errors that do not classify themselves fall back to
matching their message against known transient-failure phrases.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple, TypeVar

import requests

from .errors import OperationCancelledError, RetryExhaustedError, SonarSyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_PATTERNS: Tuple[str, ...] = (
    "connection refused",
    "timeout",
    "temporary failure",
    "network error",
    "service unavailable",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry settings.

    ``max_attempts`` counts every call including the first one. The delay before
    retry ``n`` (1-based) is ``initial_delay * backoff_multiplier ** (n - 1)``
    capped at ``max_delay``.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_errors: Tuple[str, ...] = ("connection", "timeout", "temporary")

    def delay_for(self, retry_number: int) -> float:
        """Return the sleep before the ``retry_number``-th retry."""
        delay = self.initial_delay * (self.backoff_multiplier ** max(0, retry_number - 1))
        return min(delay, self.max_delay)

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        """Return a copy of this policy allowing ``max_attempts`` calls."""
        return RetryPolicy(
            max_attempts=max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
            retryable_errors=self.retryable_errors,
        )


def is_retryable_error(exc: BaseException, extra_patterns: Iterable[str] = ()) -> bool:
    """Classify ``exc`` as transient (worth retrying) or permanent."""
    if isinstance(exc, SonarSyncError):
        flag = exc.retryable
        if flag is not None:
            return bool(flag)
    elif isinstance(exc, (requests.ConnectionError, requests.Timeout, TimeoutError)):
        return True

    message = str(exc).lower()
    for pattern in (*DEFAULT_RETRYABLE_PATTERNS, *extra_patterns):
        if pattern and pattern.lower() in message:
            return True
    return False


def wait_or_cancel(delay: float, cancel_event: Optional[threading.Event]) -> None:
    """Sleep for ``delay`` seconds, returning early with an error when cancelled.

    Raises:
        OperationCancelledError: If ``cancel_event`` is set before or during the wait.
    """
    if cancel_event is None:
        time.sleep(delay)
        return
    if cancel_event.is_set() or cancel_event.wait(delay):
        raise OperationCancelledError("operation cancelled while waiting to retry")


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool],
    cancel_event: Optional[threading.Event] = None,
    before_attempt: Optional[Callable[[int], None]] = None,
    before_wait: Optional[Callable[[], None]] = None,
    on_success: Optional[Callable[[], None]] = None,
    on_failure: Optional[Callable[[BaseException], None]] = None,
) -> T:
    """Call ``fn`` until it succeeds, a non-retryable error occurs or attempts run out.

    Args:
        fn: Zero-argument callable to invoke.
        policy: Attempt count and backoff settings.
        should_retry: Predicate deciding whether a failure may be retried.
        cancel_event: Optional event; when set, pending back-off sleeps abort.
        before_attempt: Hook run before every attempt with the 1-based attempt
            number. It may raise to veto the attempt.
        before_wait: Hook run before every back-off sleep. It may raise to stop
            retrying early.
        on_success: Hook run after a successful attempt.
        on_failure: Hook run after every failed attempt.

    Returns:
        Whatever ``fn`` returns on its first successful attempt.

    Raises:
        RetryExhaustedError: If every allowed attempt failed with a retryable error.
        OperationCancelledError: If cancellation was requested between attempts.
        Exception: The original error when ``should_retry`` rejects it.
    """
    attempts = max(1, policy.max_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        if before_attempt is not None:
            before_attempt(attempt)
        try:
            result = fn()
        except Exception as exc:
            last_error = exc
            if on_failure is not None:
                on_failure(exc)
            if not should_retry(exc):
                logger.debug(
                    "Non-retryable error, giving up",
                    extra={"attempt": attempt, "error": str(exc)},
                )
                raise
            if attempt == attempts:
                break
            if before_wait is not None:
                before_wait()
            delay = policy.delay_for(attempt)
            logger.warning(
                "Attempt failed, retrying",
                extra={"attempt": attempt, "max_attempts": attempts, "retry_delay": delay, "error": str(exc)},
            )
            wait_or_cancel(delay, cancel_event)
            continue

        if on_success is not None:
            on_success()
        return result

    assert last_error is not None
    raise RetryExhaustedError(attempts, last_error) from last_error
