"""Command-line argument parsing for the SonarQube branch synchronizer."""

from __future__ import annotations

import argparse
from typing import Dict, List, Optional, Sequence


def _positive_int(value: str) -> int:
    """Parse and validate a positive integer CLI value.

    Args:
        value: Raw command-line argument value.

    Returns:
        The validated positive integer.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be an integer") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def _positive_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be a number") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def _property(value: str) -> str:
    key, separator, _ = value.partition("=")
    if not separator or not key.strip():
        raise argparse.ArgumentTypeError("must have the form KEY=VALUE")
    return value


def properties_from_args(values: Optional[List[str]]) -> Dict[str, str]:
    """Turn repeated ``--property KEY=VALUE`` options into a dictionary."""
    properties: Dict[str, str] = {}
    for item in values or []:
        key, _, value = item.partition("=")
        properties[key.strip()] = value
    return properties


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--owner", required=True, help="Gitea repository owner (user or organization).")
    common.add_argument("--repo", required=True, help="Gitea repository name.")
    common.add_argument(
        "--source-dir",
        default=".",
        help="Local git working tree of the repository (default: current directory).",
    )
    common.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return common


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed CLI arguments; ``command`` names the selected sub-command.
    """
    parser = argparse.ArgumentParser(
        prog="sonar-branch-sync",
        description=(
            "Scan unanalysed commits of Gitea branches and pull requests with "
            "sonar-scanner and keep one SonarQube project per branch in sync."
        ),
    )
    common = _common_parser()
    commands = parser.add_subparsers(dest="command", required=True)

    scan_branch = commands.add_parser("scan-branch", parents=[common], help="Scan one branch.")
    scan_branch.add_argument("--branch", required=True, help="Branch to scan.")
    scan_branch.add_argument("--commit", default=None, help="Scan only this commit instead of the branch range.")
    scan_branch.add_argument("--force", action="store_true", help="Rescan commits that were already analysed.")

    scan_pr = commands.add_parser("scan-pr", parents=[common], help="Scan the head branch of an open pull request.")
    scan_pr.add_argument("--pr", type=_positive_int, required=True, help="Pull request number.")

    sync_repo = commands.add_parser("sync-repo", parents=[common], help="Synchronize every branch of a repository.")
    sync_repo.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Process every branch and report all failures instead of stopping at the first one.",
    )

    clear_repo = commands.add_parser("clear-repo", parents=[common], help="Delete the repository's projects.")
    clear_repo.add_argument("--force", action="store_true", help="Actually delete every project of the repository.")

    update_project = commands.add_parser(
        "update-project",
        parents=[common],
        help="Refresh description and administrators of a branch project.",
    )
    update_project.add_argument("--branch", required=True, help="Branch whose project is refreshed.")

    scan_request = commands.add_parser(
        "scan-request",
        parents=[common],
        help="Run a validated scan request with retries and print the JSON response.",
    )
    scan_request.add_argument("--branch", required=True, help="Branch to scan.")
    scan_request.add_argument("--project-key", default=None, help="Project key (default: owner_repo_branch).")
    scan_request.add_argument("--project-name", default=None, help="Project name (default: the project key).")
    scan_request.add_argument("--skip-validation", action="store_true", help="Skip branch pre-validation.")
    scan_request.add_argument("--force-rescan", action="store_true", help="Rescan already analysed commits.")
    scan_request.add_argument("--timeout", type=_positive_float, default=None, help="Per-attempt timeout in seconds.")
    scan_request.add_argument(
        "--retry-attempts",
        type=_positive_int,
        default=None,
        help="Total attempts for the request (default: configured retry count).",
    )
    scan_request.add_argument("--quality-gate", action="store_true", help="Check the quality gate after the scan.")
    scan_request.add_argument(
        "--property",
        type=_property,
        action="append",
        default=[],
        help="Extra scanner property KEY=VALUE (repeatable).",
    )

    return parser.parse_args(argv)
