"""Tests for command orchestration and exit codes in the main module."""

import json
import sys
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sonarsync.config import Config, GiteaConfig, ResilienceConfig, ScannerConfig, SonarQubeConfig
from sonarsync.errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    OperationCancelledError,
    OperationTimeoutError,
    ScanExecutionError,
    SyncError,
    ValidationError,
)
from sonarsync.main import build_components, orchestrate
from sonarsync.models import BranchScanResult, ScanOutcome, ScanResponse, ScanStatus, SyncReport


def _config() -> Config:
    return Config(
        gitea=GiteaConfig(url="https://git.example.com", token="gitea-token"),
        sonarqube=SonarQubeConfig(url="https://sonar.example.com", token="sonar-token", project_prefix="ci"),
        scanner=ScannerConfig(),
        resilience=ResilienceConfig(),
        max_concurrency=4,
    )


def _run(argv, components):
    with patch("sonarsync.main.load_config", return_value=_config()) as load_config_mock, patch(
        "sonarsync.main.build_components", return_value=components
    ), patch("sonarsync.main.configure_logging"):
        exit_code = orchestrate(argv)
    return exit_code, load_config_mock


def test_orchestrate_scan_branch_success(capsys):
    """Verify scan-branch returns 0 and prints one line per scanned commit."""
    components = Mock()
    components.branches.scan_branch.return_value = BranchScanResult(
        project_key="ci_org_repo_main",
        scanned_commits=["abc123"],
        outcomes=[ScanOutcome(success=True, duration=3.0, commit_hash="abc123")],
    )

    exit_code, load_config_mock = _run(
        ["scan-branch", "--owner", "org", "--repo", "repo", "--branch", "main", "--source-dir", "/src"],
        components,
    )

    assert exit_code == 0
    load_config_mock.assert_called_once_with(source_dir="/src")
    target = components.branches.scan_branch.call_args.args[0]
    assert target.branch == "main"
    assert target.source_dir == "/src"
    assert "ci_org_repo_main: abc123 scanned" in capsys.readouterr().out


def test_orchestrate_sync_repo_passes_fail_fast(capsys):
    """Verify sync-repo maps --continue-on-error to fail_fast=False."""
    components = Mock()
    components.synchronizer.sync_repository.return_value = SyncReport(
        owner="org", repository="repo", processed=["main"], scanned=["main"]
    )

    exit_code, _ = _run(["sync-repo", "--owner", "org", "--repo", "repo", "--continue-on-error"], components)

    assert exit_code == 0
    components.synchronizer.sync_repository.assert_called_once_with("org", "repo", fail_fast=False)
    assert "1 branches processed" in capsys.readouterr().out


def test_orchestrate_scan_request_prints_json_and_fails_on_failed_status(capsys):
    """Verify scan-request prints the JSON response and exits 5 when the scan failed."""
    components = Mock()
    components.requests.scan_branch.return_value = ScanResponse(
        scan_id="ci_org_repo_main-main-1",
        status=ScanStatus.FAILED,
        timestamp="2026-01-01T00:00:00+00:00",
        errors=["scan failed"],
    )

    exit_code, _ = _run(
        ["scan-request", "--owner", "org", "--repo", "repo", "--branch", "main", "--property", "a=b"],
        components,
    )

    assert exit_code == 5
    request = components.requests.scan_branch.call_args.args[0]
    assert request.project_key == "ci_org_repo_main"
    assert request.project_name == "ci_org_repo_main"
    assert request.options.custom_properties == {"a": "b"}
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "FAILED"
    assert payload["errors"] == ["scan failed"]


@pytest.mark.parametrize(
    "error, expected_code",
    [
        (ValidationError("branch_name", "is required"), 2),
        (ConfigurationError("bad setting"), 2),
        (AuthenticationError("bad token"), 3),
        (ApiError("Gitea unavailable", 503), 4),
        (ScanExecutionError("scan failed"), 5),
        (SyncError("failed to sync branch 'main'"), 5),
        (OperationTimeoutError("scan-request: operation timed out after 5s"), 4),
        (OperationCancelledError("scan of branch 'main' cancelled"), 5),
        (RuntimeError("unexpected"), 1),
    ],
)
def test_orchestrate_maps_errors_to_exit_codes(error, expected_code, capsys):
    """Verify each error family maps to its documented exit code."""
    components = Mock()
    components.branches.scan_branch.side_effect = error

    exit_code, _ = _run(["scan-branch", "--owner", "org", "--repo", "repo", "--branch", "main"], components)

    assert exit_code == expected_code


def test_orchestrate_configuration_error_returns_2(capsys):
    """Verify configuration loading failures exit with code 2 before any work."""
    with patch("sonarsync.main.load_config", side_effect=ConfigurationError("Missing GITEA_URL")), patch(
        "sonarsync.main.build_components"
    ) as build_mock, patch("sonarsync.main.configure_logging"):
        exit_code = orchestrate(["clear-repo", "--owner", "org", "--repo", "repo"])

    assert exit_code == 2
    build_mock.assert_not_called()
    assert "Missing GITEA_URL" in capsys.readouterr().err


def test_build_components_wires_one_executor_per_service():
    """Verify Gitea and SonarQube get separate resilience executors."""
    components = build_components(_config(), source_dir="/src")

    synchronizer = components.synchronizer
    assert synchronizer.gitea_executor is not synchronizer.sonarqube_executor
    assert synchronizer.gitea_executor.name == "gitea"
    assert synchronizer.sonarqube_executor.name == "sonarqube"
    assert synchronizer.gate.capacity == 4
    assert synchronizer.source_dir == "/src"
    assert components.branches.project_prefix == "ci"
    assert components.requests.policy.max_attempts == 3
