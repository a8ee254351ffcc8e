"""Main entry point for the SonarQube branch synchronizer."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict, dataclass
from typing import Optional, Sequence

from .branch import BranchScanOrchestrator
from .cli import parse_args, properties_from_args
from .config import Config, load_config
from .errors import (
    ApiError,
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    GitError,
    OperationCancelledError,
    OperationTimeoutError,
    RetryExhaustedError,
    ScanExecutionError,
    ScannerError,
    SonarSyncError,
    SyncError,
    ValidationError,
)
from .executor import ScanExecutor
from .gitea_client import GiteaClient
from .models import BranchScanResult, ScanOptions, ScanRequest, ScanStatus, ScanTarget, project_key
from .resilience import ResilienceExecutor
from .retry import RetryPolicy
from .selection import CommitSelector
from .service import ScanRequestOrchestrator
from .sonarqube_client import SonarQubeClient
from .sync import RepositorySynchronizer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INVALID = 2
EXIT_AUTH = 3
EXIT_API = 4
EXIT_SCAN = 5


@dataclass
class Components:
    """Wired collaborators for one CLI invocation."""

    branches: BranchScanOrchestrator
    synchronizer: RepositorySynchronizer
    requests: ScanRequestOrchestrator


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging once for CLI execution."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_components(config: Config, source_dir: Optional[str] = None) -> Components:
    """Create clients, one resilience executor per service, and the orchestrators."""
    gitea = GiteaClient(config.gitea)
    sonarqube = SonarQubeClient(config.sonarqube)
    gitea_executor = ResilienceExecutor.from_config("gitea", config.resilience)
    sonarqube_executor = ResilienceExecutor.from_config("sonarqube", config.resilience)

    selector = CommitSelector(sonarqube, gitea, sonarqube_executor, gitea_executor)
    branches = BranchScanOrchestrator(
        selector,
        ScanExecutor(config.sonarqube, config.scanner),
        gitea,
        gitea_executor,
        project_prefix=config.sonarqube.project_prefix,
    )
    synchronizer = RepositorySynchronizer(
        gitea,
        sonarqube,
        branches,
        source_dir=source_dir,
        gitea_executor=gitea_executor,
        sonarqube_executor=sonarqube_executor,
        max_concurrency=config.max_concurrency,
    )
    policy = RetryPolicy(
        max_attempts=max(1, config.resilience.max_retries),
        initial_delay=config.resilience.retry_delay,
        max_delay=config.resilience.max_delay,
        backoff_multiplier=config.resilience.backoff_multiplier,
        retryable_errors=config.resilience.retryable_errors,
    )
    scan_requests = ScanRequestOrchestrator(branches, sonarqube, sonarqube_executor, policy=policy)
    return Components(branches=branches, synchronizer=synchronizer, requests=scan_requests)


def _print_branch_result(result: BranchScanResult) -> None:
    if not result.scanned_commits:
        print(f"{result.project_key}: nothing to scan")
        return
    for outcome in result.outcomes:
        state = "skipped (no sources)" if outcome.skipped else "scanned"
        print(f"{result.project_key}: {outcome.commit_hash} {state} in {outcome.duration:.1f}s")


def _run_command(args, config: Config, components: Components) -> int:
    if args.command == "scan-branch":
        target = ScanTarget(
            owner=args.owner,
            repository=args.repo,
            branch=args.branch,
            source_dir=args.source_dir,
            commit_hash=args.commit,
        )
        _print_branch_result(components.branches.scan_branch(target, force=args.force))
        return EXIT_OK

    if args.command == "scan-pr":
        _print_branch_result(components.branches.scan_pr(args.owner, args.repo, args.pr, args.source_dir))
        return EXIT_OK

    if args.command == "sync-repo":
        report = components.synchronizer.sync_repository(args.owner, args.repo, fail_fast=not args.continue_on_error)
        print(
            f"{args.owner}/{args.repo}: {len(report.processed)} branches processed, "
            f"{len(report.scanned)} scanned, {len(report.updated)} updated"
        )
        return EXIT_OK

    if args.command == "clear-repo":
        deleted = components.synchronizer.clear_repository(args.owner, args.repo, force=args.force)
        print(f"{args.owner}/{args.repo}: {len(deleted)} projects deleted")
        return EXIT_OK

    if args.command == "update-project":
        for warning in components.synchronizer.update_project(args.owner, args.repo, args.branch):
            print(f"WARNING: {warning}")
        return EXIT_OK

    key = args.project_key or project_key(args.owner, args.repo, args.branch, config.sonarqube.project_prefix)
    request = ScanRequest(
        project_key=key,
        project_name=args.project_name or key,
        project_path=args.source_dir,
        branch_name=args.branch,
        owner=args.owner,
        repository=args.repo,
        options=ScanOptions(
            skip_validation=args.skip_validation,
            force_rescan=args.force_rescan,
            timeout=args.timeout,
            retry_attempts=args.retry_attempts or 0,
            custom_properties=properties_from_args(args.property),
            quality_gate_check=args.quality_gate,
        ),
    )
    response = components.requests.scan_branch(request)
    print(json.dumps(asdict(response), indent=2, default=str))
    return EXIT_OK if response.status is ScanStatus.COMPLETED else EXIT_SCAN


def orchestrate(argv: Optional[Sequence[str]] = None) -> int:
    """Run the selected sub-command end-to-end.

    Returns:
        Process exit code: ``0`` success, ``2`` invalid configuration or input,
        ``3`` authentication failure, ``4`` Gitea/SonarQube failure or timeout, ``5`` scan
        or synchronization failure or cancellation, ``1`` anything else.
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(source_dir=args.source_dir)
        return _run_command(args, config, build_components(config, source_dir=args.source_dir))
    except (ConfigurationError, ValidationError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_INVALID
    except AuthenticationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_AUTH
    except (ApiError, CircuitOpenError, RetryExhaustedError, OperationTimeoutError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_API
    except (GitError, ScannerError, ScanExecutionError, SyncError, OperationCancelledError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_SCAN
    except SonarSyncError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_UNEXPECTED
    except Exception:
        logger.exception("Unexpected error")
        return EXIT_UNEXPECTED


def main(argv: Optional[Sequence[str]] = None) -> int:
    return orchestrate(argv)


if __name__ == "__main__":
    raise SystemExit(main())
