"""Per-commit scan pipeline: checkout, source detection, scanner configuration and run."""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Dict, Optional

from .config import ScannerConfig, SonarQubeConfig
from .errors import GitError, ScanExecutionError, ScannerError
from .git import checkout_commit
from .models import ScanOutcome, ScanTarget
from .scanner import SonarScanner

logger = logging.getLogger(__name__)

VCS_METADATA_DIRS = frozenset({".git", ".gitea", ".github"})

ScannerFactory = Callable[[ScannerConfig, str], SonarScanner]


def _default_scanner_factory(config: ScannerConfig, work_dir: str) -> SonarScanner:
    return SonarScanner(config, work_dir=work_dir)


def has_source_directories(source_dir: str) -> bool:
    """Return ``True`` when ``source_dir`` holds at least one visible top-level directory."""
    with os.scandir(source_dir) as entries:
        for entry in entries:
            if entry.name in VCS_METADATA_DIRS or entry.name.startswith("."):
                continue
            if entry.is_dir():
                return True
    return False


class ScanExecutor:
    """Scan one commit of a branch with sonar-scanner.

    Every step is fail-fast: the first error aborts the commit and nothing is
    reported to SonarQube for it.
    """

    def __init__(
        self,
        sonarqube_config: SonarQubeConfig,
        scanner_config: ScannerConfig,
        scanner_factory: ScannerFactory = _default_scanner_factory,
    ) -> None:
        self.sonarqube_config = sonarqube_config
        self.scanner_config = scanner_config
        self._scanner_factory = scanner_factory

    def build_properties(self, project_key: str, target: ScanTarget, commit_hash: str) -> Dict[str, str]:
        """Return the scanner properties for one commit.

        Configured extra properties come first so the required ones always win.
        """
        properties: Dict[str, str] = dict(self.scanner_config.properties)
        properties.update(
            {
                "sonar.projectKey": project_key,
                "sonar.sources": ".",
                "sonar.host.url": self.sonarqube_config.url,
                "sonar.scm.revision": commit_hash,
            }
        )
        if not self.sonarqube_config.disable_branch_analysis:
            properties["sonar.branch.name"] = target.branch
        return properties

    def scan_commit(
        self,
        project_key: str,
        target: ScanTarget,
        commit_hash: str,
        extra_properties: Optional[Dict[str, str]] = None,
    ) -> ScanOutcome:
        """Check out ``commit_hash`` in ``target.source_dir`` and scan it.

        Args:
            project_key: SonarQube project receiving the analysis.
            target: Branch being scanned; its ``source_dir`` is the git working tree.
            commit_hash: Commit to check out and scan.
            extra_properties: Per-request scanner properties, overridden by the
                required ones.

        Returns:
            The scan outcome. A commit without any visible top-level directory
            yields a successful outcome with ``skipped=True``.

        Raises:
            GitError: If the checkout fails.
            ScannerError: If sonar-scanner cannot be installed, initialized or started.
            ScanExecutionError: If sonar-scanner ran and reported a failed analysis.
        """
        started = time.monotonic()
        try:
            checkout_commit(target.source_dir, commit_hash)
        except GitError as exc:
            raise GitError(f"failed to scan commit {commit_hash}: {exc}") from exc

        if not has_source_directories(target.source_dir):
            logger.info(
                "No source directories at commit, skipping scan",
                extra={"project_key": project_key, "commit_hash": commit_hash},
            )
            return ScanOutcome(
                success=True,
                duration=time.monotonic() - started,
                skipped=True,
                commit_hash=commit_hash,
            )

        scanner = self._scanner_factory(self.scanner_config, target.source_dir)
        scanner.set_token(self.sonarqube_config.token)
        if extra_properties:
            scanner.set_properties(extra_properties)
        scanner.set_properties(self.build_properties(project_key, target, commit_hash))

        try:
            scanner.ensure_installed()
            scanner.initialize()
            outcome = scanner.execute()
        except ScannerError as exc:
            raise ScannerError(f"failed to scan commit {commit_hash}: {exc}") from exc
        finally:
            scanner.cleanup()

        outcome.commit_hash = commit_hash
        if not outcome.success:
            details = "; ".join(outcome.errors) or "unknown error"
            raise ScanExecutionError(f"failed to scan commit {commit_hash}: scan failed: {details}", outcome.errors)

        logger.info(
            "Scanned commit",
            extra={
                "project_key": project_key,
                "commit_hash": commit_hash,
                "duration_seconds": round(outcome.duration, 2),
                "analysis_id": outcome.analysis_id,
            },
        )
        return outcome
