"""Tests for repository synchronization and the concurrency gate."""

import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import Mock, call, patch

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sonarsync.errors import NotFoundError, ScanExecutionError, SyncError
from sonarsync.models import Branch, BranchScanResult, Project
from sonarsync.sync import ConcurrencyGate, RepositorySynchronizer


def _synchronizer(branch_names, existing_keys=(), max_concurrency=10):
    gitea = Mock()
    gitea.list_branches.return_value = [Branch(name=name) for name in branch_names]
    sonarqube = Mock()
    sonarqube.list_projects.return_value = [Project(key=key) for key in existing_keys]
    orchestrator = Mock()
    orchestrator.project_prefix = ""
    orchestrator.scan_branch.side_effect = lambda target, cancel_event=None, key=None: BranchScanResult(project_key=key)
    synchronizer = RepositorySynchronizer(
        gitea,
        sonarqube,
        orchestrator,
        max_concurrency=max_concurrency,
        workspace=lambda branch: f"/work/{branch}",
    )
    return synchronizer, gitea, sonarqube, orchestrator


def test_concurrency_gate_bounds_active_units():
    """Verify the gate holds back units beyond its capacity until a slot is released."""
    gate = ConcurrencyGate(capacity=2)
    release = threading.Event()

    def work():
        with gate:
            release.wait(5)

    threads = [threading.Thread(target=work) for _ in range(6)]
    for thread in threads:
        thread.start()
    deadline = time.monotonic() + 5
    while gate.active < 2 and time.monotonic() < deadline:
        time.sleep(0.005)
    time.sleep(0.05)

    assert gate.active == 2
    release.set()
    for thread in threads:
        thread.join()

    assert gate.peak == 2
    assert gate.active == 0


def test_concurrency_gate_releases_slot_when_unit_raises():
    """Verify a failing unit still releases its slot."""
    gate = ConcurrencyGate(capacity=1)

    with pytest.raises(RuntimeError):
        with gate:
            raise RuntimeError("unit failed")

    assert gate.active == 0
    with gate:
        assert gate.active == 1


def test_concurrency_gate_rejects_zero_capacity():
    """Verify a gate needs at least one slot."""
    with pytest.raises(ValueError):
        ConcurrencyGate(capacity=0)


def _tracked_scan(width):
    """Return a scan side effect whose first ``width`` calls wait for each other, and its counters."""
    barrier = threading.Barrier(width, timeout=5)
    lock = threading.Lock()
    counters = {"started": 0, "active": 0, "peak": 0}

    def scan(target, cancel_event=None, key=None):
        with lock:
            counters["started"] += 1
            counters["active"] += 1
            counters["peak"] = max(counters["peak"], counters["active"])
            first_wave = counters["started"] <= width
        try:
            if first_wave:
                barrier.wait()
            time.sleep(0.01)
        finally:
            with lock:
                counters["active"] -= 1
        return BranchScanResult(project_key=key)

    return scan, counters


def test_sync_repository_runs_exactly_10_of_25_branches_at_once():
    """Verify 10 branch units run together, never more, while all 25 branches are scanned."""
    names = [f"feature-{index}" for index in range(25)]
    synchronizer, _, _, orchestrator = _synchronizer(names)
    scan, counters = _tracked_scan(10)
    orchestrator.scan_branch.side_effect = scan

    report = synchronizer.sync_repository("org", "repo")

    assert counters["peak"] == 10
    assert synchronizer.gate.peak == 10
    assert synchronizer.gate.active == 0
    assert sorted(report.scanned) == sorted(names)
    assert len(report.processed) == 25


def test_sync_repository_gate_bounds_units_when_pool_is_wider():
    """Verify the gate, not the thread pool size, limits how many branch units run."""
    names = [f"feature-{index}" for index in range(12)]
    synchronizer, _, _, orchestrator = _synchronizer(names, max_concurrency=3)
    scan, counters = _tracked_scan(3)
    orchestrator.scan_branch.side_effect = scan

    def wide_pool(max_workers, **kwargs):
        return ThreadPoolExecutor(max_workers=len(names), **kwargs)

    with patch("sonarsync.sync.ThreadPoolExecutor", wide_pool):
        report = synchronizer.sync_repository("org", "repo")

    assert counters["peak"] == 3
    assert synchronizer.gate.peak == 3
    assert len(report.scanned) == 12


def test_sync_repository_updates_existing_and_scans_new_branches():
    """Verify existing projects get a metadata refresh and new branches are scanned."""
    synchronizer, gitea, sonarqube, orchestrator = _synchronizer(["main", "feature"], existing_keys=["org_repo_main"])
    synchronizer.update_project = Mock(return_value=[])

    report = synchronizer.sync_repository("org", "repo")

    assert report.updated == ["main"]
    assert report.scanned == ["feature"]
    synchronizer.update_project.assert_called_once()
    assert synchronizer.update_project.call_args.args == ("org", "repo", "main")
    orchestrator.scan_branch.assert_called_once()
    target = orchestrator.scan_branch.call_args.args[0]
    assert target.branch == "feature"
    assert target.source_dir == "/work/feature"
    assert orchestrator.scan_branch.call_args.kwargs["key"] == "org_repo_feature"
    gitea.list_branches.assert_called_once_with("org", "repo")
    assert sonarqube.list_projects.call_args_list == [call("org", "repo"), call("org", "repo")]
    sonarqube.delete_project.assert_not_called()


def test_sync_repository_fail_fast_raises_first_error_and_skips_cleanup():
    """Verify the first failing branch aborts synchronization and cleanup does not run."""
    synchronizer, _, sonarqube, orchestrator = _synchronizer(["bad"])
    orchestrator.scan_branch.side_effect = ScanExecutionError("failed to scan commit abc: scan failed")

    with pytest.raises(SyncError) as exc_info:
        synchronizer.sync_repository("org", "repo")

    assert "bad" in str(exc_info.value)
    assert isinstance(exc_info.value.failures[0], ScanExecutionError)
    sonarqube.list_projects.assert_called_once_with("org", "repo")


def test_sync_repository_fail_fast_cancels_other_branches():
    """Verify the shared cancellation event is set for the remaining branch units."""
    synchronizer, _, _, orchestrator = _synchronizer(["bad", "slow"], max_concurrency=2)
    seen_events = []

    def scan(target, cancel_event=None, key=None):
        seen_events.append(cancel_event)
        if target.branch == "bad":
            raise ScanExecutionError("scan failed")
        time.sleep(0.05)
        return BranchScanResult(project_key=key)

    orchestrator.scan_branch.side_effect = scan

    with pytest.raises(SyncError):
        synchronizer.sync_repository("org", "repo")

    assert seen_events
    assert all(event.is_set() for event in seen_events)


def test_sync_repository_aggregates_failures_when_not_fail_fast():
    """Verify best-effort mode processes every branch and reports all failures together."""
    synchronizer, _, sonarqube, orchestrator = _synchronizer(["ok", "bad-1", "bad-2"])

    def scan(target, cancel_event=None, key=None):
        if target.branch.startswith("bad"):
            raise ScanExecutionError(f"scan of {target.branch} failed")
        return BranchScanResult(project_key=key)

    orchestrator.scan_branch.side_effect = scan

    with pytest.raises(SyncError) as exc_info:
        synchronizer.sync_repository("org", "repo", fail_fast=False)

    assert len(exc_info.value.failures) == 2
    assert "2 of 3 branches" in str(exc_info.value)
    assert orchestrator.scan_branch.call_count == 3
    sonarqube.list_projects.assert_called_once_with("org", "repo")


def test_update_project_sets_truncated_readme_and_team_administrators():
    """Verify the README becomes the description and owners/dev members become administrators."""
    synchronizer, gitea, sonarqube, _ = _synchronizer([])
    gitea.get_file_content.return_value = "x" * 600
    gitea.get_team_members.side_effect = [["alice", "bob"], ["bob", "carol"]]

    warnings = synchronizer.update_project("org", "repo", "main")

    assert warnings == []
    gitea.get_file_content.assert_called_once_with("org", "repo", "README.md", ref="main")
    key, description = sonarqube.update_project_description.call_args.args
    assert key == "org_repo_main"
    assert len(description) == 500
    assert gitea.get_team_members.call_args_list == [call("org", "owners"), call("org", "dev")]
    sonarqube.update_project_administrators.assert_called_once_with("org_repo_main", ["alice", "bob", "carol"])


def test_update_project_tolerates_missing_readme_and_team():
    """Verify missing README or teams only produce warnings."""
    synchronizer, gitea, sonarqube, _ = _synchronizer([])
    gitea.get_file_content.side_effect = NotFoundError("README.md not found")
    gitea.get_team_members.side_effect = [NotFoundError("no owners team"), ["dave"]]

    warnings = synchronizer.update_project("org", "repo", "main")

    assert len(warnings) == 2
    sonarqube.update_project_description.assert_not_called()
    sonarqube.update_project_administrators.assert_called_once_with("org_repo_main", ["dave"])


def test_clear_repository_without_force_deletes_nothing():
    """Verify a non-forced clear only logs and deletes no project."""
    synchronizer, _, sonarqube, _ = _synchronizer([], existing_keys=["org_repo_main", "org_repo_old"])

    assert synchronizer.clear_repository("org", "repo") == []
    sonarqube.delete_project.assert_not_called()


def test_clear_repository_with_force_deletes_every_project():
    """Verify a forced clear deletes every project of the repository."""
    synchronizer, _, sonarqube, _ = _synchronizer([], existing_keys=["org_repo_main", "org_repo_old"])

    deleted = synchronizer.clear_repository("org", "repo", force=True)

    assert deleted == ["org_repo_main", "org_repo_old"]
    assert sonarqube.delete_project.call_args_list == [call("org_repo_main"), call("org_repo_old")]
