"""Tests for command-line argument parsing."""

import sys
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sonarsync.cli import parse_args, properties_from_args


def test_parse_args_scan_branch():
    """Verify scan-branch parses the shared options and branch settings."""
    args = parse_args(
        ["scan-branch", "--owner", "org", "--repo", "repo", "--branch", "feature/x", "--commit", "abc123", "--force"]
    )

    assert args.command == "scan-branch"
    assert args.owner == "org"
    assert args.repo == "repo"
    assert args.branch == "feature/x"
    assert args.commit == "abc123"
    assert args.force is True
    assert args.source_dir == "."
    assert args.verbose is False


def test_parse_args_sync_repo_continue_on_error():
    """Verify sync-repo exposes best-effort mode."""
    args = parse_args(["sync-repo", "--owner", "org", "--repo", "repo", "--source-dir", "/src", "--verbose"])

    assert args.command == "sync-repo"
    assert args.continue_on_error is False
    assert args.source_dir == "/src"
    assert args.verbose is True

    args = parse_args(["sync-repo", "--owner", "org", "--repo", "repo", "--continue-on-error"])
    assert args.continue_on_error is True


def test_parse_args_scan_pr_requires_positive_number():
    """Verify scan-pr rejects non-positive pull request numbers."""
    assert parse_args(["scan-pr", "--owner", "org", "--repo", "repo", "--pr", "12"]).pr == 12

    with pytest.raises(SystemExit):
        parse_args(["scan-pr", "--owner", "org", "--repo", "repo", "--pr", "0"])


def test_parse_args_scan_request_options():
    """Verify scan-request options and repeated properties are parsed."""
    args = parse_args(
        [
            "scan-request",
            "--owner",
            "org",
            "--repo",
            "repo",
            "--branch",
            "main",
            "--timeout",
            "90",
            "--retry-attempts",
            "2",
            "--quality-gate",
            "--property",
            "sonar.language=py",
            "--property",
            "sonar.exclusions=docs/**",
        ]
    )

    assert args.timeout == 90.0
    assert args.retry_attempts == 2
    assert args.quality_gate is True
    assert args.skip_validation is False
    assert properties_from_args(args.property) == {
        "sonar.language": "py",
        "sonar.exclusions": "docs/**",
    }


def test_parse_args_rejects_malformed_property():
    """Verify a property without '=' is rejected."""
    with pytest.raises(SystemExit):
        parse_args(["scan-request", "--owner", "org", "--repo", "repo", "--branch", "main", "--property", "oops"])


def test_parse_args_requires_command():
    """Verify a sub-command is mandatory."""
    with pytest.raises(SystemExit):
        parse_args([])


def test_parse_args_requires_owner():
    """Verify the owner option is required."""
    with pytest.raises(SystemExit):
        parse_args(["clear-repo", "--repo", "repo"])
