"""Entry point for structured branch scan requests."""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .branch import BranchScanOrchestrator
from .errors import OperationTimeoutError, SonarSyncError, ValidationError
from .git import is_valid_branch_name, read_branch_metadata
from .models import BranchScanResult, ScanOptions, ScanRequest, ScanResponse, ScanStatus, ScanTarget
from .resilience import ResilienceExecutor, guarded_call, run_with_timeout
from .retry import RetryPolicy, is_retryable_error, retry_call
from .sonarqube_client import SonarQubeClient

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("project_key", "project_name", "project_path", "branch_name", "owner", "repository")


def validate_request(request: ScanRequest) -> None:
    """Reject a request with any blank required field.

    Raises:
        ValidationError: Naming the first missing field.
    """
    for field_name in _REQUIRED_FIELDS:
        value = getattr(request, field_name)
        if not value or not str(value).strip():
            raise ValidationError(field_name, "is required")


def validate_branch(request: ScanRequest) -> None:
    """Check that the branch can be scanned from ``request.project_path``.

    Raises:
        ValidationError: If the path is not a directory or the branch name is not a legal ref.
    """
    if not request.branch_name or not request.project_path:
        raise ValidationError("branch_name", "branch name and project path are required")
    if not os.path.isdir(request.project_path):
        raise ValidationError("project_path", f"directory does not exist: {request.project_path}")
    if not is_valid_branch_name(request.branch_name):
        raise ValidationError("branch_name", f"invalid branch name: {request.branch_name!r}")


class ScanRequestOrchestrator:
    """Validate a :class:`ScanRequest`, scan the branch with retries and report the outcome.

    Retries here wrap the whole branch scan. They are independent of the
    per-call retries of the service executors but use the same backoff policy.
    """

    def __init__(
        self,
        orchestrator: BranchScanOrchestrator,
        sonarqube: SonarQubeClient,
        sonarqube_executor: Optional[ResilienceExecutor] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.orchestrator = orchestrator
        self.sonarqube = sonarqube
        self.sonarqube_executor = sonarqube_executor
        self.policy = policy or RetryPolicy()
        self._clock = clock

    def _is_retryable(self, exc: BaseException) -> bool:
        # A timed-out attempt keeps running in the same working tree.
        if isinstance(exc, OperationTimeoutError):
            return False
        return is_retryable_error(exc, self.policy.retryable_errors)

    def _scan(self, request: ScanRequest, options: ScanOptions) -> BranchScanResult:
        target = ScanTarget(
            owner=request.owner,
            repository=request.repository,
            branch=request.branch_name,
            source_dir=request.project_path,
        )
        kwargs = {
            "key": request.project_key,
            "extra_properties": options.custom_properties or None,
            "force": options.force_rescan,
        }
        if options.timeout:
            return run_with_timeout(self.orchestrator.scan_branch, options.timeout, "scan-request", target, **kwargs)
        return self.orchestrator.scan_branch(target, **kwargs)

    def _check_quality_gate(self, response: ScanResponse, project_key: str) -> None:
        try:
            status = guarded_call(self.sonarqube_executor, self.sonarqube.get_quality_gate_status, project_key)
        except SonarSyncError as exc:
            response.warnings.append(f"quality gate check failed: {exc}")
            return
        if status != "OK":
            response.warnings.append(f"quality gate status is {status}")

    def scan_branch(self, request: ScanRequest) -> ScanResponse:
        """Scan the branch described by ``request``.

        Returns:
            A ``COMPLETED`` response, or a ``FAILED`` one carrying the errors of
            the last attempt.

        Raises:
            ValidationError: If a required field is blank or the branch fails
                pre-validation. Nothing is called in that case.
        """
        started = time.monotonic()
        options = request.options or ScanOptions()
        response = ScanResponse(
            scan_id=f"{request.project_key}-{request.branch_name}-{int(self._clock())}",
            status=ScanStatus.STARTED,
            timestamp=datetime.now(timezone.utc),
        )

        validate_request(request)
        if not options.skip_validation:
            validate_branch(request)

        logger.info(
            "Starting scan request",
            extra={"scan_id": response.scan_id, "project_key": request.project_key, "branch": request.branch_name},
        )
        try:
            response.branch_metadata = read_branch_metadata(request.project_path, request.branch_name)
        except SonarSyncError as exc:
            response.warnings.append(f"could not read branch metadata: {exc}")

        policy = self.policy
        if options.retry_attempts > 0:
            policy = policy.with_attempts(options.retry_attempts)

        try:
            response.scan_result = retry_call(lambda: self._scan(request, options), policy, self._is_retryable)
        except Exception as exc:
            logger.error(
                "Scan request failed",
                extra={"scan_id": response.scan_id, "error": str(exc), "error_type": type(exc).__name__},
            )
            response.status = ScanStatus.FAILED
            response.errors.append(str(exc))
            response.duration = time.monotonic() - started
            return response

        response.status = ScanStatus.COMPLETED
        if options.quality_gate_check:
            self._check_quality_gate(response, request.project_key)

        response.duration = time.monotonic() - started
        logger.info(
            "Scan request completed",
            extra={
                "scan_id": response.scan_id,
                "scanned_commits": len(response.scan_result.scanned_commits),
                "warnings": len(response.warnings),
            },
        )
        return response
