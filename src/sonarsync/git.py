"""Local git operations on the scan working directory."""

from __future__ import annotations

import logging
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from .errors import GitError
from .models import MAIN_BRANCHES, BranchMetadata

logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT_SECONDS = 120

_INVALID_REF_PATTERN = re.compile(r"(\.\.|@\{|[\x00-\x20\x7f~^:?*\[\\]|//)")


def run_git(repo: Path, args: List[str], timeout_seconds: int = DEFAULT_GIT_TIMEOUT_SECONDS) -> str:
    """Run one git command in ``repo`` and return its stripped stdout.

    Raises:
        GitError: If git cannot be started, times out or exits non-zero.
    """
    command = ["git", *args]
    try:
        result = subprocess.run(
            command,
            cwd=repo,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"git {args[0]} timeout after {timeout_seconds}s") from exc
    except OSError as exc:
        raise GitError(f"unable to run git {args[0]}: {exc}") from exc

    if result.returncode != 0:
        stderr = result.stderr.strip() or f"git {args[0]} failed"
        raise GitError(f"git {' '.join(args)}: {stderr}")
    return result.stdout.strip()


def checkout_commit(source_dir: str, commit_hash: str, timeout_seconds: int = DEFAULT_GIT_TIMEOUT_SECONDS) -> None:
    """Force the working tree at ``source_dir`` to ``commit_hash`` (detached HEAD)."""
    repo = Path(source_dir)
    if not repo.is_dir():
        raise GitError(f"source directory does not exist: {source_dir}")

    logger.debug("Checking out commit", extra={"source_dir": source_dir, "commit_hash": commit_hash})
    try:
        run_git(repo, ["checkout", "--force", "--detach", commit_hash], timeout_seconds)
    except GitError:
        # The commit may not have been fetched yet.
        run_git(repo, ["fetch", "--quiet", "origin", commit_hash], timeout_seconds)
        run_git(repo, ["checkout", "--force", "--detach", commit_hash], timeout_seconds)
    run_git(repo, ["clean", "-fdq"], timeout_seconds)


def is_valid_branch_name(branch_name: str) -> bool:
    """Return ``True`` when ``branch_name`` is an acceptable git ref name."""
    if not branch_name or branch_name.startswith(("-", "/", ".")):
        return False
    if branch_name.endswith(("/", ".", ".lock")) or branch_name == "@":
        return False
    return _INVALID_REF_PATTERN.search(branch_name) is None


def read_branch_metadata(
    source_dir: str,
    branch_name: str,
    timeout_seconds: int = DEFAULT_GIT_TIMEOUT_SECONDS,
) -> BranchMetadata:
    """Read head commit hash, message, author and date for ``branch_name``.

    Falls back to ``HEAD`` when the branch is not known locally, as happens for
    detached CI checkouts.
    """
    repo = Path(source_dir)
    try:
        run_git(repo, ["rev-parse", "--verify", "--quiet", branch_name], timeout_seconds)
        ref = branch_name
    except GitError:
        ref = "HEAD"

    output = run_git(repo, ["log", "-1", "--format=%H%x1f%s%x1f%an%x1f%ct", ref], timeout_seconds)
    parts = output.split("\x1f")
    if len(parts) != 4:
        raise GitError(f"unexpected git log output for {ref}: {output!r}")

    commit_hash, message, author, epoch = parts
    return BranchMetadata(
        name=branch_name,
        commit_hash=commit_hash,
        commit_message=message,
        author=author,
        timestamp=datetime.fromtimestamp(int(epoch), tz=timezone.utc),
        is_main_branch=branch_name in MAIN_BRANCHES,
    )


def prepare_worktree(repo_dir: str, name: str, timeout_seconds: int = DEFAULT_GIT_TIMEOUT_SECONDS) -> str:
    """Return a private git worktree of ``repo_dir`` for ``name``, creating it on first use.

    Concurrent branch scans each check out into their own worktree so they never
    share a working tree.
    """
    repo = Path(repo_dir)
    safe_name = re.sub(r"[^\w.-]+", "_", name)
    worktree = repo / ".sonarsync-worktrees" / safe_name
    if (worktree / ".git").exists():
        return str(worktree)

    worktree.parent.mkdir(parents=True, exist_ok=True)
    run_git(repo, ["worktree", "add", "--force", "--detach", str(worktree)], timeout_seconds)
    return str(worktree)
