"""Gitea REST API client for branch, commit, pull request and team data."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from .config import GiteaConfig
from .errors import ApiError, AuthenticationError, NotFoundError
from .models import MAIN_BRANCHES, Branch, BranchCommitRange, Commit, PullRequest

logger = logging.getLogger(__name__)

START_TAG = "sq-start"


class GiteaClient:
    """Small, typed client for the Gitea v1 API.

    The client performs exactly one HTTP request per call. Retries and circuit
    breaking are applied by the caller through
    :class:`~sonarsync.resilience.ResilienceExecutor`.
    """

    _PAGE_SIZE = 50

    def __init__(self, config: GiteaConfig) -> None:
        self._config = config
        self._timeout_seconds = config.timeout_seconds
        self._base_url = f"{config.url.rstrip('/')}/api/v1"

        self._session = requests.Session()
        self._session.headers.update(
            {"Accept": "application/json", "Authorization": f"token {config.token}"}
        )

    def _build_url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _parse_datetime(self, value: Optional[str]) -> Optional[datetime]:
        """Parse Gitea ISO8601 timestamps into timezone-aware datetimes."""
        if not value:
            return None
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        parsed = datetime.fromisoformat(normalized)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = self._build_url(path)
        try:
            response = self._session.get(url, params=params, timeout=self._timeout_seconds)
        except requests.RequestException as exc:
            raise ApiError(f"Gitea request failed: GET {url}: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Gitea rejected credentials: GET {url} returned {response.status_code}")
        if response.status_code == 404:
            raise NotFoundError(f"Gitea resource not found: GET {url}")
        if response.status_code >= 400:
            raise ApiError(
                f"Gitea API request failed: GET {url} returned {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self._get(path, params=params)
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(f"Gitea API returned invalid JSON: GET {path}") from exc

    def _parse_commit(self, item: Dict[str, Any]) -> Commit:
        sha = item.get("sha") or item.get("id")
        if not sha:
            raise ApiError(f"Gitea commit payload is missing 'sha': {item}")
        details = item.get("commit") or {}
        author = details.get("author") or {}
        return Commit(
            sha=str(sha),
            message=str(details.get("message", "")).strip(),
            author=str(author.get("name", "")),
            date=self._parse_datetime(author.get("date")),
        )

    def _repo_path(self, owner: str, repository: str) -> str:
        return f"repos/{owner}/{repository}"

    def list_branches(self, owner: str, repository: str) -> List[Branch]:
        """List every branch of a repository, following pagination."""
        branches: List[Branch] = []
        page = 1
        while True:
            payload = self._get_json(
                f"{self._repo_path(owner, repository)}/branches",
                params={"page": page, "limit": self._PAGE_SIZE},
            )
            for item in payload or []:
                name = item.get("name")
                if not name:
                    continue
                commit = item.get("commit") or {}
                branches.append(Branch(name=str(name), commit_sha=commit.get("id")))
            if len(payload or []) < self._PAGE_SIZE:
                break
            page += 1
        return branches

    def get_latest_commit(self, owner: str, repository: str, branch: str) -> Commit:
        payload = self._get_json(
            f"{self._repo_path(owner, repository)}/commits",
            params={"sha": branch, "limit": 1, "stat": "false", "files": "false"},
        )
        if not payload:
            raise NotFoundError(f"Branch '{branch}' has no commits")
        return self._parse_commit(payload[0])

    def get_first_commit(self, owner: str, repository: str, branch: str) -> Commit:
        """Return the oldest commit reachable from ``branch``."""
        response = self._get(
            f"{self._repo_path(owner, repository)}/commits",
            params={"sha": branch, "limit": 1, "stat": "false", "files": "false"},
        )
        total_header = response.headers.get("X-Total-Count") or response.headers.get("x-total-count")
        total = int(total_header) if total_header and total_header.isdigit() else 1
        payload = self._get_json(
            f"{self._repo_path(owner, repository)}/commits",
            params={"sha": branch, "limit": 1, "page": max(1, total), "stat": "false", "files": "false"},
        )
        if not payload:
            raise NotFoundError(f"Branch '{branch}' has no commits")
        return self._parse_commit(payload[0])

    def find_tagged_commit(self, owner: str, repository: str, tag: str) -> Optional[Commit]:
        for item in self._get_json(f"{self._repo_path(owner, repository)}/tags") or []:
            if item.get("name") == tag:
                sha = (item.get("commit") or {}).get("sha")
                if sha:
                    return Commit(sha=str(sha))
        return None

    def _compare(self, owner: str, repository: str, base: str, head: str) -> Tuple[List[Commit], Optional[Commit]]:
        payload = self._get_json(f"{self._repo_path(owner, repository)}/compare/{base}...{head}") or {}
        commits = [self._parse_commit(item) for item in payload.get("commits") or []]
        merge_base = payload.get("merge_base_commit")
        return commits, self._parse_commit(merge_base) if merge_base else None

    def get_branch_commit_range(self, owner: str, repository: str, branch: str) -> BranchCommitRange:
        """Return the first and last commit of ``branch`` relative to its base.

        For ``main``/``master`` the first commit is the one tagged ``sq-start``,
        falling back to the first commit in history. For any other branch it is
        the merge base with the configured base branch, falling back to the first
        commit of the base branch.
        """
        last = self.get_latest_commit(owner, repository, branch)

        if branch in MAIN_BRANCHES:
            first = self.find_tagged_commit(owner, repository, START_TAG)
            if first is None:
                first = self.get_first_commit(owner, repository, branch)
            return BranchCommitRange(first=first, last=last)

        base = self._config.base_branch or "main"
        _, merge_base = self._compare(owner, repository, base, branch)
        if merge_base is None:
            logger.debug("No merge base found, using first commit of base branch", extra={"branch": branch})
            merge_base = self.get_first_commit(owner, repository, base)
        return BranchCommitRange(first=merge_base, last=last)

    def get_commits_between(self, owner: str, repository: str, base_sha: str, head_sha: str) -> List[Commit]:
        """List commits reachable from ``head_sha`` but not from ``base_sha``."""
        commits, _ = self._compare(owner, repository, base_sha, head_sha)
        return commits

    def list_active_pull_requests(self, owner: str, repository: str) -> List[PullRequest]:
        pull_requests: List[PullRequest] = []
        page = 1
        while True:
            payload = self._get_json(
                f"{self._repo_path(owner, repository)}/pulls",
                params={"state": "open", "page": page, "limit": self._PAGE_SIZE},
            )
            for item in payload or []:
                number = item.get("number")
                head = (item.get("head") or {}).get("ref")
                base = (item.get("base") or {}).get("ref")
                if number is None or not head:
                    raise ApiError(f"Gitea pull request payload is missing required fields: {item}")
                pull_requests.append(
                    PullRequest(number=int(number), head=str(head), base=str(base or ""), title=str(item.get("title", "")))
                )
            if len(payload or []) < self._PAGE_SIZE:
                break
            page += 1
        return pull_requests

    def get_team_members(self, org: str, team: str) -> List[str]:
        """Return the logins of every member of ``team`` in organization ``org``."""
        payload = self._get_json(f"orgs/{org}/teams/search", params={"q": team}) or {}
        team_id = None
        for item in payload.get("data") or []:
            if item.get("name") == team:
                team_id = item.get("id")
                break
        if team_id is None:
            raise NotFoundError(f"Team '{team}' was not found in organization '{org}'")

        members = self._get_json(f"teams/{team_id}/members") or []
        return [str(member["login"]) for member in members if member.get("login")]

    def get_file_content(self, owner: str, repository: str, path: str, ref: Optional[str] = None) -> str:
        params = {"ref": ref} if ref else None
        response = self._get(f"{self._repo_path(owner, repository)}/raw/{path.lstrip('/')}", params=params)
        return response.text
