"""Domain models for branch scanning and repository synchronization.

These dataclasses intentionally model only the subset of Gitea and SonarQube
payload fields the orchestration needs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

MAIN_BRANCHES = ("main", "master")


def project_key(owner: str, repository: str, branch: str, prefix: str = "") -> str:
    """Return the SonarQube project key for one (owner, repository, branch) triple."""
    key = f"{owner}_{repository}_{branch}"
    return f"{prefix}_{key}" if prefix else key


@dataclass(slots=True)
class ScanTarget:
    """Identifies the scope of one branch (or single commit) scan."""

    owner: str
    repository: str
    branch: str
    source_dir: str
    commit_hash: Optional[str] = None


@dataclass(slots=True)
class Branch:
    """Represents a repository branch returned by Gitea."""

    name: str
    commit_sha: Optional[str] = None


@dataclass(slots=True)
class Commit:
    """Represents the minimal commit data needed to build scan candidates."""

    sha: str
    message: str = ""
    author: str = ""
    date: Optional[datetime] = None


@dataclass(slots=True)
class BranchCommitRange:
    """First and last commit of a branch relative to its base."""

    first: Optional[Commit]
    last: Optional[Commit]


@dataclass(slots=True)
class PullRequest:
    """Represents an open pull request and its source/target branches."""

    number: int
    head: str
    base: str
    title: str = ""


@dataclass(slots=True)
class Project:
    """Represents a SonarQube project."""

    key: str
    name: str = ""
    description: str = ""
    last_analysis_date: Optional[datetime] = None


@dataclass(slots=True)
class Analysis:
    """A completed analysis already recorded by SonarQube for a project."""

    revision: str
    analysis_id: str = ""
    date: Optional[datetime] = None


@dataclass(slots=True)
class ScanOutcome:
    """Result of one sonar-scanner run for one commit."""

    success: bool
    duration: float = 0.0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False
    analysis_id: Optional[str] = None
    commit_hash: Optional[str] = None


@dataclass(slots=True)
class BranchMetadata:
    """Git information about the head commit of a branch."""

    name: str
    commit_hash: str = ""
    commit_message: str = ""
    author: str = ""
    timestamp: Optional[datetime] = None
    is_main_branch: bool = False


@dataclass(slots=True)
class BranchScanResult:
    """Aggregated outcome of scanning every selected commit of one branch."""

    project_key: str
    scanned_commits: List[str] = field(default_factory=list)
    outcomes: List[ScanOutcome] = field(default_factory=list)
    branch_metadata: Optional[BranchMetadata] = None
    duration: float = 0.0
    timestamp: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SyncReport:
    """Summary of a repository synchronization run."""

    owner: str
    repository: str
    processed: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    scanned: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


class ScanStatus(str, Enum):
    """Lifecycle status reported for a scan request."""

    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(slots=True)
class ScanOptions:
    """Per-request tuning for :class:`ScanRequest`."""

    skip_validation: bool = False
    force_rescan: bool = False
    timeout: Optional[float] = None
    retry_attempts: int = 0
    custom_properties: Dict[str, str] = field(default_factory=dict)
    quality_gate_check: bool = False


@dataclass(slots=True)
class ScanRequest:
    """A request to scan one branch of a repository checked out at ``project_path``."""

    project_key: str
    project_name: str
    project_path: str
    branch_name: str
    owner: str
    repository: str
    metadata: Dict[str, str] = field(default_factory=dict)
    options: Optional[ScanOptions] = None


@dataclass(slots=True)
class ScanResponse:
    """Outcome returned for a :class:`ScanRequest`."""

    scan_id: str
    status: ScanStatus
    timestamp: datetime
    branch_metadata: Optional[BranchMetadata] = None
    scan_result: Optional[BranchScanResult] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration: float = 0.0
