"""SonarQube web API client for project, analysis and quality gate data."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests.auth import HTTPBasicAuth

from .config import SonarQubeConfig
from .errors import ApiError, AuthenticationError, NotFoundError, ValidationError
from .models import Analysis, Project

logger = logging.getLogger(__name__)


class SonarQubeClient:
    """Small, typed client for the SonarQube web API.

    One HTTP request per call; retries and circuit breaking are applied by the
    caller.
    """

    _PAGE_SIZE = 100
    _ISSUE_PAGE_SIZE = 500

    def __init__(self, config: SonarQubeConfig) -> None:
        self._config = config
        self._timeout_seconds = config.timeout_seconds
        self._base_url = config.url.rstrip("/")

        self._session = requests.Session()
        self._session.auth = HTTPBasicAuth(config.token, "")
        self._session.headers.update({"Accept": "application/json"})

    @property
    def project_prefix(self) -> str:
        return self._config.project_prefix

    def _parse_datetime(self, value: Optional[str]) -> Optional[datetime]:
        """Parse SonarQube timestamps such as ``2026-01-01T10:00:00+0000``."""
        if not value:
            return None
        for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
            try:
                return datetime.strptime(value, fmt)
            except ValueError:
                continue
        logger.debug("Unparseable SonarQube timestamp", extra={"value": value})
        return None

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            response = self._session.request(method, url, timeout=self._timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise ApiError(f"SonarQube request failed: {method} {url}: {exc}") from exc

        if response.status_code == 401:
            raise AuthenticationError(f"SonarQube rejected credentials: {method} {url}")
        if response.status_code == 404:
            raise NotFoundError(f"SonarQube resource not found: {method} {url}")
        if response.status_code >= 400:
            raise ApiError(
                f"SonarQube API request failed: {method} {url} returned {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._request("GET", path, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(f"SonarQube API returned invalid JSON: GET {path}") from exc
        if not isinstance(payload, dict):
            raise ApiError(f"SonarQube API returned unexpected payload shape: GET {path}")
        return payload

    def _post(self, path: str, data: Dict[str, Any]) -> requests.Response:
        return self._request("POST", path, data=data)

    def _to_project(self, item: Dict[str, Any]) -> Project:
        return Project(
            key=str(item["key"]),
            name=str(item.get("name", "")),
            description=str(item.get("description", "")),
            last_analysis_date=self._parse_datetime(item.get("lastAnalysisDate")),
        )

    def _search_projects(self, query: Dict[str, Any]) -> List[Project]:
        projects: List[Project] = []
        page = 1
        while True:
            payload = self._get_json("api/projects/search", params={**query, "ps": self._PAGE_SIZE, "p": page})
            components = payload.get("components") or []
            projects.extend(self._to_project(item) for item in components if item.get("key"))
            if len(components) < self._PAGE_SIZE:
                break
            page += 1
        return projects

    def get_project(self, project_key: str) -> Project:
        projects = self._search_projects({"projects": project_key})
        for project in projects:
            if project.key == project_key:
                return project
        raise NotFoundError(f"SonarQube project '{project_key}' does not exist")

    def create_project(self, project_key: str, name: str) -> Project:
        """Create a project, treating "already exists" answers as success."""
        try:
            self._post(
                "api/projects/create",
                {"project": project_key, "name": name, "visibility": self._config.default_visibility},
            )
        except ApiError as exc:
            if exc.status_code == 400 and "already exist" in str(exc).lower():
                logger.debug("Project already exists", extra={"project_key": project_key})
                return Project(key=project_key, name=name)
            raise
        logger.info("Created SonarQube project", extra={"project_key": project_key})
        return Project(key=project_key, name=name)

    def get_or_create_project(self, project_key: str, name: Optional[str] = None) -> Project:
        """Return the project for ``project_key``, creating it when it does not exist."""
        if not project_key:
            raise ValidationError("project_key", "Project key must be provided")
        try:
            return self.get_project(project_key)
        except NotFoundError:
            logger.debug("Project not found, creating it", extra={"project_key": project_key})
        return self.create_project(project_key, name or project_key)

    def update_project_description(self, project_key: str, description: str) -> None:
        self._post(
            "api/settings/set",
            {"component": project_key, "key": "sonar.projectDescription", "value": description},
        )

    def update_project_administrators(self, project_key: str, logins: Sequence[str]) -> None:
        """Grant the ``admin`` permission on ``project_key`` to every login."""
        for login in dict.fromkeys(logins):
            self._post("api/permissions/add_user", {"projectKey": project_key, "login": login, "permission": "admin"})

    def set_project_tags(self, project_key: str, tags: Sequence[str]) -> None:
        self._post("api/project_tags/set", {"project": project_key, "tags": ",".join(tags)})

    def delete_project(self, project_key: str) -> None:
        self._post("api/projects/delete", {"project": project_key})

    def list_projects(self, owner: str, repository: str) -> List[Project]:
        """List every project whose key belongs to ``owner``/``repository``."""
        if not owner or not repository:
            raise ValidationError("owner/repository", "Owner and repository must be provided")
        stem = f"{owner}_{repository}_"
        if self.project_prefix:
            stem = f"{self.project_prefix}_{stem}"
        return [project for project in self._search_projects({"q": stem}) if project.key.startswith(stem)]

    def list_analyses(self, project_key: str) -> List[Analysis]:
        """List completed analyses of ``project_key``, newest first."""
        analyses: List[Analysis] = []
        page = 1
        while True:
            payload = self._get_json(
                "api/project_analyses/search",
                params={"project": project_key, "ps": self._PAGE_SIZE, "p": page},
            )
            items = payload.get("analyses") or []
            for item in items:
                analyses.append(
                    Analysis(
                        revision=str(item.get("revision", "")),
                        analysis_id=str(item.get("key", "")),
                        date=self._parse_datetime(item.get("date")),
                    )
                )
            if len(items) < self._PAGE_SIZE:
                break
            page += 1
        return analyses

    def list_issues(self, project_key: str) -> List[Dict[str, Any]]:
        issues: List[Dict[str, Any]] = []
        page = 1
        while True:
            payload = self._get_json(
                "api/issues/search",
                params={"componentKeys": project_key, "ps": self._ISSUE_PAGE_SIZE, "p": page},
            )
            items = payload.get("issues") or []
            issues.extend(items)
            if len(items) < self._ISSUE_PAGE_SIZE:
                break
            page += 1
        return issues

    def get_quality_gate_status(self, project_key: str) -> str:
        """Return the quality gate status (``OK``, ``WARN``, ``ERROR`` or ``NONE``)."""
        payload = self._get_json("api/qualitygates/project_status", params={"projectKey": project_key})
        return str((payload.get("projectStatus") or {}).get("status", "NONE"))
