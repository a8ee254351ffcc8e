"""Tests for commit selection against existing SonarQube analyses."""

import sys
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sonarsync.errors import ApiError, NotFoundError
from sonarsync.models import Analysis, BranchCommitRange, Commit, ScanTarget
from sonarsync.resilience import ResilienceExecutor
from sonarsync.selection import CommitSelector


def _target(commit_hash=None) -> ScanTarget:
    return ScanTarget(
        owner="org",
        repository="repo",
        branch="feature",
        source_dir="/work/repo",
        commit_hash=commit_hash,
    )


def _selector(first="aaa111", last="bbb222", analyses=None):
    sonarqube = Mock()
    sonarqube.list_analyses.return_value = [Analysis(revision=sha) for sha in (analyses or [])]
    gitea = Mock()
    gitea.get_branch_commit_range.return_value = BranchCommitRange(first=Commit(sha=first), last=Commit(sha=last))
    return CommitSelector(sonarqube, gitea), sonarqube, gitea


def test_select_commits_removes_analysed_revisions_preserving_order():
    """Verify already analysed revisions are dropped and the remaining order is kept."""
    selector, sonarqube, gitea = _selector(analyses=["aaa111"])

    commits = selector.select_commits("org_repo_feature", _target())

    assert commits == ["bbb222"]
    sonarqube.get_or_create_project.assert_called_once_with("org_repo_feature")
    gitea.get_branch_commit_range.assert_called_once_with("org", "repo", "feature")
    sonarqube.list_analyses.assert_called_once_with("org_repo_feature")


def test_select_commits_returns_first_then_last_when_nothing_analysed():
    """Verify both range ends are candidates, first commit first."""
    selector, _, _ = _selector(analyses=["zzz999"])

    assert selector.select_commits("key", _target()) == ["aaa111", "bbb222"]


def test_select_commits_single_candidate_when_first_equals_last():
    """Verify a single-commit branch yields exactly one candidate."""
    selector, _, _ = _selector(first="ccc333", last="ccc333")

    assert selector.select_commits("key", _target()) == ["ccc333"]


def test_select_commits_uses_explicit_commit_without_range_lookup():
    """Verify an explicit commit hash is the only candidate and no range is requested."""
    selector, _, gitea = _selector()

    assert selector.select_commits("key", _target(commit_hash="ddd444")) == ["ddd444"]
    gitea.get_branch_commit_range.assert_not_called()


def test_select_commits_empty_when_everything_analysed():
    """Verify a fully analysed branch returns an empty list without error."""
    selector, _, _ = _selector(analyses=["aaa111", "bbb222"])

    assert selector.select_commits("key", _target()) == []


def test_select_commits_fails_open_when_analyses_query_fails():
    """Verify an analyses lookup failure returns every candidate unfiltered."""
    selector, sonarqube, _ = _selector()
    sonarqube.list_analyses.side_effect = ApiError("SonarQube unavailable", 500)

    assert selector.select_commits("key", _target()) == ["aaa111", "bbb222"]


def test_select_commits_propagates_range_failure():
    """Verify a commit range failure is raised and nothing else is queried."""
    selector, sonarqube, gitea = _selector()
    gitea.get_branch_commit_range.side_effect = NotFoundError("branch not found")

    with pytest.raises(NotFoundError):
        selector.select_commits("key", _target())

    sonarqube.list_analyses.assert_not_called()


def test_select_commits_force_skips_analyses_lookup():
    """Verify force returns every candidate without consulting existing analyses."""
    selector, sonarqube, _ = _selector(analyses=["aaa111", "bbb222"])

    assert selector.select_commits("key", _target(), force=True) == ["aaa111", "bbb222"]
    sonarqube.list_analyses.assert_not_called()


def test_select_commits_retries_transient_range_failures_through_executor():
    """Verify Gitea calls go through the Gitea executor and transient failures are retried."""
    sonarqube = Mock()
    sonarqube.list_analyses.return_value = []
    gitea = Mock()
    gitea.get_branch_commit_range.side_effect = [
        ApiError("Gitea request failed: connection reset"),
        BranchCommitRange(first=Commit(sha="aaa111"), last=Commit(sha="aaa111")),
    ]
    selector = CommitSelector(
        sonarqube,
        gitea,
        sonarqube_executor=ResilienceExecutor("sonarqube"),
        gitea_executor=ResilienceExecutor("gitea", max_retries=2),
    )

    with patch("sonarsync.retry.time.sleep") as sleep_mock:
        commits = selector.select_commits("key", _target())

    assert commits == ["aaa111"]
    assert gitea.get_branch_commit_range.call_count == 2
    sleep_mock.assert_called_once_with(1.0)
