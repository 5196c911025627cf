"""Tests for the pulse orchestrator with a recording git client and a real repo."""

from __future__ import annotations

from pathlib import Path

import pytest

from pulseforge.git_tools import GitError
from pulseforge.orchestrator import PulseOrchestrator
from pulseforge.schemas import PlannedPulse, PulseStatus
from pulseforge.store import PulseRepository, PulseStateError


class _RecordingGit:
    """Records calls; returns predictable names and SHAs."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root
        self.calls: list[tuple] = []
        self.commits = 0
        self.checkpoint_error: Exception | None = None
        self.checkpoint_sha: str | None = "recovery1"
        self.merge_error: Exception | None = None
        self.checkout_errors: list[Exception] = []

    def find_repo_root(self, path):
        return self.repo_root

    def get_current_branch(self, repo_root):
        self.calls.append(("get_current_branch",))
        return "main"

    def create_workflow_branch(self, repo_root, workflow_id, base_branch):
        self.calls.append(("create_workflow_branch", workflow_id, base_branch))
        return f"pulseforge/{workflow_id}"

    def create_worktree(self, repo_root, workflow_id, branch_name):
        self.calls.append(("create_worktree", workflow_id, branch_name))
        return Path(repo_root) / ".pulseforge" / "worktrees" / workflow_id

    def create_pulse_branch(self, repo_root, workflow_branch, pulse_id):
        self.calls.append(("create_pulse_branch", workflow_branch, pulse_id))
        return f"{workflow_branch}-{pulse_id}"

    def delete_branch(self, repo_root, branch_name, force=False):
        self.calls.append(("delete_branch", branch_name, force))

    def checkout_in_worktree(self, worktree, branch_name):
        self.calls.append(("checkout_in_worktree", branch_name))
        if self.checkout_errors:
            raise self.checkout_errors.pop(0)

    def commit_changes(self, worktree, message):
        self.calls.append(("commit_changes", message))
        self.commits += 1
        return f"sha{self.commits}"

    def merge_pulse_branch(self, repo_root, worktree, workflow_branch, pulse_branch):
        self.calls.append(("merge_pulse_branch", workflow_branch, pulse_branch))
        if self.merge_error is not None:
            raise self.merge_error

    def create_recovery_checkpoint(self, worktree):
        self.calls.append(("create_recovery_checkpoint",))
        if self.checkpoint_error is not None:
            raise self.checkpoint_error
        return self.checkpoint_sha

    def cleanup_workflow(self, repo_root, workflow_id, delete_workflow_branch=False):
        self.calls.append(("cleanup_workflow", workflow_id, delete_workflow_branch))


PLAN = [
    PlannedPulse(id="p1", title="Add parser", description="Parse the config file"),
    PlannedPulse(id="p2", title="Add tests"),
    PlannedPulse(id="p3", title="Document"),
]


def _orchestrator(tmp_path: Path) -> tuple[PulseOrchestrator, _RecordingGit]:
    git = _RecordingGit(tmp_path)
    return PulseOrchestrator(PulseRepository(), tmp_path, git=git), git


def test_initialize_pulsing_defaults_to_current_branch(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)

    result = orchestrator.initialize_pulsing("wf")

    assert result.success is True
    assert result.workflow_branch == "pulseforge/wf"
    assert result.worktree_path == str(tmp_path / ".pulseforge" / "worktrees" / "wf")
    assert ("create_workflow_branch", "wf", "main") in git.calls


def test_initialize_pulsing_reports_git_failure(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)

    def broken(*args):
        raise RuntimeError("branch exists and is locked")

    git.create_worktree = broken

    result = orchestrator.initialize_pulsing("wf", "develop")

    assert result.success is False
    assert result.error == "branch exists and is locked"


def test_create_pulses_from_plan_joins_title_and_description(tmp_path: Path) -> None:
    orchestrator, _ = _orchestrator(tmp_path)

    pulses = orchestrator.create_pulses_from_plan("wf", PLAN)

    assert [p.description for p in pulses] == ["Add parser: Parse the config file", "Add tests", "Document"]
    assert [p.planned_pulse_id for p in pulses] == ["p1", "p2", "p3"]


def test_start_next_pulse_with_empty_queue_touches_no_git(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)

    assert orchestrator.start_next_pulse("wf", tmp_path / "wt") is None
    assert git.calls == []


def test_start_next_pulse_creates_branch_and_marks_running(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)
    first = orchestrator.create_pulses_from_plan("wf", PLAN)[0]

    pulse = orchestrator.start_next_pulse("wf", tmp_path / "wt")

    assert pulse.id == first.id
    assert pulse.status == PulseStatus.RUNNING
    assert pulse.pulse_branch == f"pulseforge/wf-{first.id}"
    assert pulse.worktree_path == str(tmp_path / "wt")
    assert git.calls == [
        ("create_pulse_branch", "pulseforge/wf", first.id),
        ("checkout_in_worktree", f"pulseforge/wf-{first.id}"),
    ]
    assert orchestrator.get_running_pulse("wf").id == first.id


def test_complete_non_running_pulse_fails_without_git(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)
    pulse = orchestrator.create_pulses_from_plan("wf", PLAN)[0]

    result = orchestrator.complete_pulse(pulse.id, "feat: x")

    assert result.success is False
    assert result.error == "Pulse is not running (status: proposed)"
    assert git.calls == []


def test_complete_unknown_pulse_fails_without_git(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)

    result = orchestrator.complete_pulse("pulse_missing", "feat: x")

    assert result.success is False
    assert result.error == "Pulse not found"
    assert git.calls == []


def test_complete_pulse_reports_merge_failure_and_stays_running(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)
    orchestrator.create_pulses_from_plan("wf", PLAN[:1])
    pulse = orchestrator.start_next_pulse("wf", tmp_path / "wt")
    git.merge_error = RuntimeError("not a fast-forward")

    result = orchestrator.complete_pulse(pulse.id, "feat: x")

    assert result.success is False
    assert result.error == "not a fast-forward"
    assert orchestrator.pulses.get_pulse(pulse.id).status == PulseStatus.RUNNING


def test_three_pulse_workflow_with_recording_git(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)
    orchestrator.create_pulses_from_plan("wf", PLAN)

    shas = []
    for index in range(3):
        pulse = orchestrator.start_next_pulse("wf", tmp_path / "wt")
        result = orchestrator.complete_pulse(pulse.id, f"feat: step {index}")
        assert result.success is True
        assert result.has_more_pulses is (index < 2)
        shas.append(result.commit_sha)

    assert orchestrator.start_next_pulse("wf", tmp_path / "wt") is None
    pulses = orchestrator.get_pulses("wf")
    assert [p.status for p in pulses] == [PulseStatus.SUCCEEDED] * 3
    assert [p.commit_sha for p in pulses] == shas == ["sha1", "sha2", "sha3"]
    assert [p.description for p in pulses] == ["feat: step 0", "feat: step 1", "feat: step 2"]
    assert orchestrator.are_all_pulses_complete("wf") is True
    assert orchestrator.has_unresolved_issues("wf") is False


def test_fail_pulse_records_recovery_checkpoint(tmp_path: Path) -> None:
    orchestrator, _ = _orchestrator(tmp_path)
    orchestrator.create_pulses_from_plan("wf", PLAN[:2])
    pulse = orchestrator.start_next_pulse("wf", tmp_path / "wt")

    orchestrator.fail_pulse(pulse.id, "agent crashed")

    failed = orchestrator.pulses.get_pulse(pulse.id)
    assert failed.status == PulseStatus.FAILED
    assert failed.failure_reason == "agent crashed"
    assert failed.recovery_commit_sha == "recovery1"
    assert failed.commit_sha is None
    assert orchestrator.are_all_pulses_complete("wf") is False


def test_stop_pulse_swallows_checkpoint_failure(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)
    orchestrator.create_pulses_from_plan("wf", PLAN[:1])
    pulse = orchestrator.start_next_pulse("wf", tmp_path / "wt")
    git.checkpoint_error = RuntimeError("index.lock exists")

    orchestrator.stop_pulse(pulse.id)

    stopped = orchestrator.pulses.get_pulse(pulse.id)
    assert stopped.status == PulseStatus.STOPPED
    assert stopped.recovery_commit_sha is None


def test_rejection_count_and_unresolved_issues(tmp_path: Path) -> None:
    orchestrator, _ = _orchestrator(tmp_path)
    orchestrator.create_pulses_from_plan("wf", PLAN[:1])
    pulse = orchestrator.start_next_pulse("wf", tmp_path / "wt")

    assert orchestrator.increment_rejection_count(pulse.id) == 1
    assert orchestrator.get_rejection_count(pulse.id) == 1
    assert orchestrator.get_rejection_count("pulse_missing") == 0

    orchestrator.complete_pulse(pulse.id, "fix: partial", has_unresolved_issues=True)
    assert orchestrator.has_unresolved_issues("wf") is True


def test_preflight_status_helpers(tmp_path: Path) -> None:
    orchestrator, _ = _orchestrator(tmp_path)
    assert orchestrator.is_preflight_complete("wf") is False

    orchestrator.create_preflight_setup("wf", "session-1")
    orchestrator.pulses.complete_preflight_setup("wf")
    assert orchestrator.is_preflight_complete("wf") is True
    assert orchestrator.is_preflight_failed("wf") is False


def test_cleanup_workflow_delegates_to_git(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)

    orchestrator.cleanup_workflow("wf", delete_branch=True)

    assert git.calls == [("cleanup_workflow", "wf", True)]


@pytest.mark.parametrize("end", ["stop", "fail"])
def test_ending_a_finished_pulse_is_refused_before_any_git_call(tmp_path: Path, end: str) -> None:
    orchestrator, git = _orchestrator(tmp_path)
    orchestrator.create_pulses_from_plan("wf", PLAN[:2])
    first = orchestrator.start_next_pulse("wf", tmp_path / "wt")
    orchestrator.complete_pulse(first.id, "feat: first")
    second = orchestrator.start_next_pulse("wf", tmp_path / "wt")
    git.calls.clear()

    with pytest.raises(PulseStateError):
        if end == "stop":
            orchestrator.stop_pulse(first.id)
        else:
            orchestrator.fail_pulse(first.id, "too late")

    assert git.calls == []
    assert orchestrator.pulses.get_pulse(first.id).status == PulseStatus.SUCCEEDED
    assert orchestrator.pulses.get_pulse(second.id).status == PulseStatus.RUNNING


def test_stopping_a_proposed_pulse_makes_no_checkpoint(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)
    pulse = orchestrator.create_pulses_from_plan("wf", PLAN[:1])[0]

    orchestrator.stop_pulse(pulse.id)

    assert git.calls == []
    assert orchestrator.pulses.get_pulse(pulse.id).status == PulseStatus.STOPPED


def test_failed_checkout_removes_pulse_branch_and_keeps_pulse_proposed(tmp_path: Path) -> None:
    orchestrator, git = _orchestrator(tmp_path)
    pulse = orchestrator.create_pulses_from_plan("wf", PLAN[:1])[0]
    git.checkout_errors.append(GitError("worktree is missing"))
    branch = f"pulseforge/wf-{pulse.id}"

    with pytest.raises(GitError):
        orchestrator.start_next_pulse("wf", tmp_path / "missing")

    assert ("delete_branch", branch, True) in git.calls
    assert orchestrator.pulses.get_pulse(pulse.id).status == PulseStatus.PROPOSED

    retried = orchestrator.start_next_pulse("wf", tmp_path / "wt")
    assert retried.id == pulse.id
    assert retried.status == PulseStatus.RUNNING


@pytest.mark.integration
def test_stopping_finished_pulse_leaves_running_pulse_work_alone(git_repo: Path, git) -> None:
    orchestrator = PulseOrchestrator(PulseRepository(), git_repo)
    worktree = Path(orchestrator.initialize_pulsing("wf", "main").worktree_path)
    orchestrator.create_pulses_from_plan("wf", PLAN[:2])
    first = orchestrator.start_next_pulse("wf", worktree)
    (worktree / "first.txt").write_text("1\n", encoding="utf-8")
    assert orchestrator.complete_pulse(first.id, "feat: first").success
    second = orchestrator.start_next_pulse("wf", worktree)
    (worktree / "wip.txt").write_text("half done\n", encoding="utf-8")
    head_before = git(worktree, "rev-parse", "HEAD")

    with pytest.raises(PulseStateError):
        orchestrator.stop_pulse(first.id)

    assert git(worktree, "rev-parse", "HEAD") == head_before
    assert "wip.txt" in git(worktree, "status", "--porcelain")
    assert orchestrator.pulses.get_pulse(second.id).status == PulseStatus.RUNNING


@pytest.mark.integration
def test_start_retries_after_checkout_failure_in_real_repository(git_repo: Path, git, tmp_path: Path) -> None:
    orchestrator = PulseOrchestrator(PulseRepository(), git_repo)
    worktree = Path(orchestrator.initialize_pulsing("wf", "main").worktree_path)
    pulse = orchestrator.create_pulses_from_plan("wf", PLAN[:1])[0]

    with pytest.raises(OSError):
        orchestrator.start_next_pulse("wf", tmp_path / "no-such-worktree")
    assert git(git_repo, "branch", "--list", "pulseforge/wf-*") == ""

    started = orchestrator.start_next_pulse("wf", worktree)
    assert started.id == pulse.id
    assert git(worktree, "rev-parse", "--abbrev-ref", "HEAD") == started.pulse_branch


@pytest.mark.integration
def test_three_pulse_workflow_against_real_repository(git_repo: Path, git) -> None:
    orchestrator = PulseOrchestrator(PulseRepository(), git_repo)
    base_sha = git(git_repo, "rev-parse", "HEAD")
    init = orchestrator.initialize_pulsing("wf", "main")
    assert init.success, init.error
    worktree = Path(init.worktree_path)
    orchestrator.create_pulses_from_plan("wf", PLAN)

    for index in range(3):
        pulse = orchestrator.start_next_pulse("wf", worktree)
        assert git(worktree, "rev-parse", "--abbrev-ref", "HEAD") == pulse.pulse_branch
        (worktree / f"step{index}.txt").write_text(f"{index}\n", encoding="utf-8")
        result = orchestrator.complete_pulse(pulse.id, f"feat: step {index}")
        assert result.success, result.error

    subjects = git(git_repo, "log", "--format=%s", "pulseforge/wf").splitlines()
    assert subjects[:3] == ["feat: step 2", "feat: step 1", "feat: step 0"]
    assert git(git_repo, "rev-parse", "main") == base_sha
    assert git(git_repo, "branch", "--list", "pulseforge/wf-*") == ""
    assert orchestrator.are_all_pulses_complete("wf")

    orchestrator.cleanup_workflow("wf", delete_branch=True)
    assert not worktree.exists()
