"""Selection of the commits of a branch that still need a scan."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .errors import OperationCancelledError
from .gitea_client import GiteaClient
from .models import ScanTarget
from .resilience import ResilienceExecutor, guarded_call
from .sonarqube_client import SonarQubeClient

logger = logging.getLogger(__name__)


class CommitSelector:
    """Decide which commits of a branch have not been analysed yet.

    Candidates are the explicitly requested commit, or the first and last commit
    of the branch range. Commits whose revision SonarQube already knows are
    dropped; the remaining order is kept.
    """

    def __init__(
        self,
        sonarqube: SonarQubeClient,
        gitea: GiteaClient,
        sonarqube_executor: Optional[ResilienceExecutor] = None,
        gitea_executor: Optional[ResilienceExecutor] = None,
    ) -> None:
        self.sonarqube = sonarqube
        self.gitea = gitea
        self.sonarqube_executor = sonarqube_executor
        self.gitea_executor = gitea_executor

    def candidate_commits(self, target: ScanTarget, cancel_event: Optional[threading.Event] = None) -> List[str]:
        """Return the commits that would be scanned if nothing was analysed yet.

        Raises:
            SonarSyncError: If the commit range of the branch cannot be resolved.
        """
        if target.commit_hash:
            return [target.commit_hash]

        commit_range = guarded_call(
            self.gitea_executor,
            self.gitea.get_branch_commit_range,
            target.owner,
            target.repository,
            target.branch,
            cancel_event=cancel_event,
        )
        candidates: List[str] = []
        if commit_range.first is not None:
            candidates.append(commit_range.first.sha)
        if commit_range.last is not None and commit_range.last.sha not in candidates:
            candidates.append(commit_range.last.sha)
        return candidates

    def select_commits(
        self,
        project_key: str,
        target: ScanTarget,
        cancel_event: Optional[threading.Event] = None,
        force: bool = False,
    ) -> List[str]:
        """Return the commits of ``target`` that still need a scan, in scan order.

        The project is created first when it does not exist. A failure to list
        existing analyses is logged and every candidate is returned. With
        ``force`` the existing analyses are not consulted at all.

        Raises:
            ValidationError: If ``project_key`` is empty.
            SonarSyncError: If the project cannot be created or the branch
                commit range cannot be resolved.
        """
        guarded_call(
            self.sonarqube_executor,
            self.sonarqube.get_or_create_project,
            project_key,
            cancel_event=cancel_event,
        )
        candidates = self.candidate_commits(target, cancel_event=cancel_event)
        if not candidates or force:
            return candidates

        try:
            analyses = guarded_call(
                self.sonarqube_executor,
                self.sonarqube.list_analyses,
                project_key,
                cancel_event=cancel_event,
            )
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Could not list existing analyses, scanning every candidate",
                extra={"project_key": project_key, "error": str(exc)},
            )
            return candidates

        analysed = {analysis.revision for analysis in analyses}
        selected = [sha for sha in candidates if sha not in analysed]
        logger.debug(
            "Selected commits to scan",
            extra={"project_key": project_key, "candidates": len(candidates), "selected": len(selected)},
        )
        return selected
