"""Custom exception types for the SonarQube branch synchronizer.

Every error carries a ``retryable`` flag so retry loops can decide by error kind
instead of by message text. Plain exceptions raised by third-party code fall
back to message matching in :mod:`sonarsync.retry`.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class SonarSyncError(Exception):
    """Base exception for all recoverable synchronizer errors."""

    retryable: Optional[bool] = False


class ConfigurationError(SonarSyncError):
    """Raised when runtime configuration values are missing or invalid."""


class AuthenticationError(SonarSyncError):
    """Raised when Gitea or SonarQube credentials are unavailable or rejected."""


class ValidationError(SonarSyncError):
    """Raised when a request or parameter is missing or malformed. Never retried."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ApiError(SonarSyncError):
    """Raised when a Gitea or SonarQube API request fails or returns an unexpected response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        if self.status_code is None:
            return True
        return self.status_code == 429 or 500 <= self.status_code <= 599


class NotFoundError(ApiError):
    """Raised when the requested remote object does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)


class GitError(SonarSyncError):
    """Raised when a local git command fails."""

    retryable = None


class ScannerError(SonarSyncError):
    """Raised when the scan tool cannot be downloaded, configured, initialized or started."""

    retryable = None


class ScanExecutionError(SonarSyncError):
    """Raised when the scan tool ran but reported an unsuccessful analysis."""

    retryable = None

    def __init__(self, message: str, errors: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.errors: List[str] = list(errors or [])


class CircuitOpenError(SonarSyncError):
    """Synthetic rejection returned while a circuit breaker is open."""

    retryable = True

    def __init__(self, service: str) -> None:
        super().__init__(f"{service}: service unavailable due to open circuit breaker")
        self.service = service


class RetryExhaustedError(SonarSyncError):
    """Raised when an operation kept failing for every allowed attempt."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class OperationTimeoutError(SonarSyncError):
    """Raised when an operation does not finish before its deadline."""

    retryable = True


class OperationCancelledError(SonarSyncError):
    """Raised when a cancellation event is set while an operation is waiting."""


class SyncError(SonarSyncError):
    """Raised when one or more branches could not be synchronized."""

    def __init__(self, message: str, failures: Optional[Sequence[BaseException]] = None) -> None:
        super().__init__(message)
        self.failures: List[BaseException] = list(failures or [])
