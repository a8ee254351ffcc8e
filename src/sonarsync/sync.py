"""Repository-wide synchronization of per-branch SonarQube projects."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Set, Tuple

from .branch import BranchScanOrchestrator
from .errors import NotFoundError, OperationCancelledError, SonarSyncError, SyncError
from .git import prepare_worktree
from .gitea_client import GiteaClient
from .models import Branch, ScanTarget, SyncReport, project_key
from .resilience import ResilienceExecutor, guarded_call
from .sonarqube_client import SonarQubeClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 10
ADMIN_TEAMS = ("owners", "dev")
MAX_DESCRIPTION_LENGTH = 500


class ConcurrencyGate:
    """Fixed-capacity admission gate that also records how many units are active.

    Use as a context manager around one unit of work; the slot is released even
    when the unit raises.
    """

    def __init__(self, capacity: int = DEFAULT_MAX_CONCURRENCY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._semaphore = threading.BoundedSemaphore(capacity)
        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak

    def __enter__(self) -> "ConcurrencyGate":
        self._semaphore.acquire()
        with self._lock:
            self._active += 1
            self._peak = max(self._peak, self._active)
        return self

    def __exit__(self, *exc_info: object) -> None:
        with self._lock:
            self._active -= 1
        self._semaphore.release()


class RepositorySynchronizer:
    """Keep one SonarQube project per branch of a repository up to date.

    Branches that already have a project get a metadata refresh; new branches
    are scanned. Branch units run concurrently, at most ``max_concurrency`` at a
    time, each in its own git worktree of ``source_dir``.
    """

    def __init__(
        self,
        gitea: GiteaClient,
        sonarqube: SonarQubeClient,
        orchestrator: BranchScanOrchestrator,
        source_dir: Optional[str] = None,
        gitea_executor: Optional[ResilienceExecutor] = None,
        sonarqube_executor: Optional[ResilienceExecutor] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        workspace: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.gitea = gitea
        self.sonarqube = sonarqube
        self.orchestrator = orchestrator
        self.source_dir = source_dir
        self.gitea_executor = gitea_executor
        self.sonarqube_executor = sonarqube_executor
        self.gate = ConcurrencyGate(max_concurrency)
        self._workspace = workspace or self._default_workspace

    def _default_workspace(self, branch: str) -> str:
        if not self.source_dir:
            raise SonarSyncError("a source directory is required to scan new branches")
        return prepare_worktree(self.source_dir, branch)

    def _key(self, owner: str, repository: str, branch: str) -> str:
        return project_key(owner, repository, branch, self.orchestrator.project_prefix)

    def update_project(
        self,
        owner: str,
        repository: str,
        branch: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[str]:
        """Refresh description and administrators of the project of ``branch``.

        The description is the branch's ``README.md`` truncated to
        ``MAX_DESCRIPTION_LENGTH`` characters. Administrators are the members of
        the ``owners`` and ``dev`` teams of ``owner``. Missing data does not fail
        the update.

        Returns:
            Warnings about metadata that could not be refreshed.
        """
        key = self._key(owner, repository, branch)
        warnings: List[str] = []

        try:
            readme = guarded_call(
                self.gitea_executor,
                self.gitea.get_file_content,
                owner,
                repository,
                "README.md",
                ref=branch,
                cancel_event=cancel_event,
            )
        except NotFoundError:
            warnings.append("README.md not found, description not updated")
        else:
            guarded_call(
                self.sonarqube_executor,
                self.sonarqube.update_project_description,
                key,
                readme[:MAX_DESCRIPTION_LENGTH],
                cancel_event=cancel_event,
            )

        administrators: List[str] = []
        for team in ADMIN_TEAMS:
            try:
                members = guarded_call(
                    self.gitea_executor,
                    self.gitea.get_team_members,
                    owner,
                    team,
                    cancel_event=cancel_event,
                )
            except NotFoundError as exc:
                logger.warning("Could not read team members", extra={"team": team, "error": str(exc)})
                warnings.append(f"team '{team}' not found")
                continue
            administrators.extend(members)

        administrators = list(dict.fromkeys(administrators))
        if administrators:
            guarded_call(
                self.sonarqube_executor,
                self.sonarqube.update_project_administrators,
                key,
                administrators,
                cancel_event=cancel_event,
            )

        logger.info(
            "Updated project metadata",
            extra={"project_key": key, "administrators": len(administrators), "warnings": len(warnings)},
        )
        return warnings

    def _process_branch(
        self,
        owner: str,
        repository: str,
        branch: Branch,
        existing_keys: Set[str],
        cancel_event: threading.Event,
    ) -> Tuple[str, str]:
        with self.gate:
            if cancel_event.is_set():
                raise OperationCancelledError(f"sync of branch '{branch.name}' cancelled")

            key = self._key(owner, repository, branch.name)
            if key in existing_keys:
                self.update_project(owner, repository, branch.name, cancel_event=cancel_event)
                return branch.name, "updated"

            target = ScanTarget(
                owner=owner,
                repository=repository,
                branch=branch.name,
                source_dir=self._workspace(branch.name),
            )
            self.orchestrator.scan_branch(target, cancel_event=cancel_event, key=key)
            return branch.name, "scanned"

    def sync_repository(self, owner: str, repository: str, fail_fast: bool = True) -> SyncReport:
        """Synchronize every branch of ``owner``/``repository``.

        Args:
            owner: Repository owner (user or organization).
            repository: Repository name.
            fail_fast: Abort on the first failing branch and cancel the rest.
                When ``False`` every branch is processed and all failures are
                reported together.

        Returns:
            Report of the processed, updated and scanned branches.

        Raises:
            SyncError: If any branch failed. Stale-project cleanup only runs
                when every branch succeeded.
        """
        branches = guarded_call(self.gitea_executor, self.gitea.list_branches, owner, repository)
        projects = guarded_call(self.sonarqube_executor, self.sonarqube.list_projects, owner, repository)
        existing_keys = {project.key for project in projects}

        report = SyncReport(owner=owner, repository=repository)
        logger.info(
            "Synchronizing repository",
            extra={"owner": owner, "repository": repository, "branches": len(branches), "projects": len(existing_keys)},
        )
        if not branches:
            self.clear_repository(owner, repository, force=False)
            return report

        cancel_event = threading.Event()
        errors: List[BaseException] = []
        with ThreadPoolExecutor(
            max_workers=min(len(branches), self.gate.capacity),
            thread_name_prefix="branch-sync",
        ) as pool:
            futures: Dict[Future, str] = {
                pool.submit(self._process_branch, owner, repository, branch, existing_keys, cancel_event): branch.name
                for branch in branches
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    branch_name, action = future.result()
                except Exception as exc:
                    report.failures[name] = str(exc)
                    errors.append(exc)
                    if fail_fast:
                        cancel_event.set()
                        for pending in futures:
                            pending.cancel()
                        raise SyncError(f"failed to sync branch '{name}': {exc}", [exc]) from exc
                    logger.error("Branch sync failed", extra={"branch": name, "error": str(exc)})
                    continue

                report.processed.append(branch_name)
                if action == "updated":
                    report.updated.append(branch_name)
                else:
                    report.scanned.append(branch_name)

        if errors:
            raise SyncError(
                f"failed to sync {len(errors)} of {len(branches)} branches of {owner}/{repository}",
                errors,
            )

        self.clear_repository(owner, repository, force=False)
        return report

    def clear_repository(self, owner: str, repository: str, force: bool = False) -> List[str]:
        """Delete the SonarQube projects of ``owner``/``repository``.

        Only ``force=True`` deletes anything; without it the call just logs the
        projects it would have considered.

        Returns:
            Keys of the deleted projects.
        """
        projects = guarded_call(self.sonarqube_executor, self.sonarqube.list_projects, owner, repository)
        if not force:
            logger.warning(
                "Age-based cleanup of stale projects is not implemented, nothing deleted",
                extra={"owner": owner, "repository": repository, "projects": len(projects)},
            )
            return []

        deleted: List[str] = []
        for project in projects:
            guarded_call(self.sonarqube_executor, self.sonarqube.delete_project, project.key)
            deleted.append(project.key)
        logger.info("Deleted repository projects", extra={"owner": owner, "repository": repository, "deleted": len(deleted)})
        return deleted
