"""Full processing of one branch or pull request head."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from .errors import OperationCancelledError, ValidationError
from .executor import ScanExecutor
from .gitea_client import GiteaClient
from .models import BranchScanResult, ScanTarget, project_key
from .resilience import ResilienceExecutor, guarded_call
from .selection import CommitSelector

logger = logging.getLogger(__name__)


class BranchScanOrchestrator:
    """Select the unscanned commits of a branch and scan them in order."""

    def __init__(
        self,
        selector: CommitSelector,
        executor: ScanExecutor,
        gitea: GiteaClient,
        gitea_executor: Optional[ResilienceExecutor] = None,
        project_prefix: str = "",
    ) -> None:
        self.selector = selector
        self.executor = executor
        self.gitea = gitea
        self.gitea_executor = gitea_executor
        self.project_prefix = project_prefix

    def project_key_for(self, target: ScanTarget) -> str:
        return project_key(target.owner, target.repository, target.branch, self.project_prefix)

    def scan_branch(
        self,
        target: ScanTarget,
        cancel_event: Optional[threading.Event] = None,
        extra_properties: Optional[Dict[str, str]] = None,
        key: Optional[str] = None,
        force: bool = False,
    ) -> BranchScanResult:
        """Scan every selected commit of ``target``, stopping at the first failure.

        Args:
            target: Branch to scan.
            cancel_event: Checked before each commit; set it to stop between commits.
            extra_properties: Additional scanner properties for every commit.
            key: Project key override; derived from ``target`` when omitted.
            force: Rescan every candidate commit, even already analysed ones.

        Returns:
            Result listing the scanned commits and their outcomes. An empty
            ``scanned_commits`` list means the branch was already fully analysed.
        """
        started = time.monotonic()
        key = key or self.project_key_for(target)
        result = BranchScanResult(project_key=key, timestamp=datetime.now(timezone.utc))

        commits = self.selector.select_commits(key, target, cancel_event=cancel_event, force=force)
        if not commits:
            logger.info("Branch already analysed", extra={"project_key": key, "branch": target.branch})

        for commit_hash in commits:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError(f"scan of branch '{target.branch}' cancelled")
            outcome = self.executor.scan_commit(key, target, commit_hash, extra_properties=extra_properties)
            result.outcomes.append(outcome)
            result.scanned_commits.append(commit_hash)

        result.duration = time.monotonic() - started
        return result

    def scan_pr(
        self,
        owner: str,
        repository: str,
        pr_number: int,
        source_dir: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> BranchScanResult:
        """Scan the head branch of open pull request ``pr_number``.

        Raises:
            ValidationError: If no open pull request has that number.
        """
        pull_requests = guarded_call(
            self.gitea_executor,
            self.gitea.list_active_pull_requests,
            owner,
            repository,
            cancel_event=cancel_event,
        )
        for pull_request in pull_requests:
            if pull_request.number == pr_number:
                break
        else:
            raise ValidationError("pr_number", f"pull request #{pr_number} is not open in {owner}/{repository}")

        logger.info(
            "Scanning pull request head branch",
            extra={"pr_number": pr_number, "head": pull_request.head, "base": pull_request.base},
        )
        target = ScanTarget(owner=owner, repository=repository, branch=pull_request.head, source_dir=source_dir)
        return self.scan_branch(target, cancel_event=cancel_event)
