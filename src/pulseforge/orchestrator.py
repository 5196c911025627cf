"""Sequential pulse execution for a workflow.

The orchestrator owns every pulse state transition.  A workflow gets one
branch (``pulseforge/<workflow_id>``) and one worktree; each pulse runs on its
own branch cut from the workflow branch, checked out in that shared worktree,
and is fast-forwarded back into the workflow branch when it succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from pulseforge.git_tools import GitWorktreeClient, workflow_branch_name
from pulseforge.schemas import (
    PlannedPulse,
    PreflightSetup,
    Pulse,
    PulseCompletionResult,
    PulseStatus,
    StartPulsingResult,
)
from pulseforge.store import PulseNotFoundError, PulseRepository, PulseStateError

logger = logging.getLogger(__name__)


class GitClient(Protocol):
    def find_repo_root(self, path: str | Path) -> Path: ...

    def get_current_branch(self, repo_root: str | Path) -> str: ...

    def create_workflow_branch(self, repo_root: str | Path, workflow_id: str, base_branch: str | None) -> str: ...

    def create_worktree(self, repo_root: str | Path, workflow_id: str, branch_name: str) -> Path: ...

    def create_pulse_branch(self, repo_root: str | Path, workflow_branch: str, pulse_id: str) -> str: ...

    def delete_branch(self, repo_root: str | Path, branch_name: str, force: bool = False) -> None: ...

    def checkout_in_worktree(self, worktree: str | Path, branch_name: str) -> None: ...

    def commit_changes(self, worktree: str | Path, message: str) -> str: ...

    def merge_pulse_branch(
        self,
        repo_root: str | Path,
        worktree: str | Path,
        workflow_branch: str,
        pulse_branch: str,
    ) -> None: ...

    def create_recovery_checkpoint(self, worktree: str | Path) -> str | None: ...

    def cleanup_workflow(self, repo_root: str | Path, workflow_id: str, delete_workflow_branch: bool = False) -> None: ...


class PulseOrchestrator:
    """Drive pulses through ``proposed -> running -> succeeded|failed|stopped``.

    Parameters
    ----------
    pulses:
        Durable pulse store.
    project_root:
        Any path inside the git repository being worked on.
    git:
        Git primitives; defaults to :class:`GitWorktreeClient`.
    """

    def __init__(
        self,
        pulses: PulseRepository,
        project_root: str | Path,
        git: GitClient | None = None,
    ) -> None:
        self.pulses = pulses
        self.project_root = Path(project_root)
        self.git: GitClient = git if git is not None else GitWorktreeClient()

    def _repo_root(self) -> Path:
        return self.git.find_repo_root(self.project_root)

    # ------------------------------------------------------------------
    # Workflow setup
    # ------------------------------------------------------------------

    def initialize_pulsing(self, workflow_id: str, base_branch: str | None = None) -> StartPulsingResult:
        """Create the workflow branch and its worktree."""
        try:
            repo_root = self._repo_root()
            base = base_branch or self.git.get_current_branch(repo_root)
            workflow_branch = self.git.create_workflow_branch(repo_root, workflow_id, base)
            worktree_path = self.git.create_worktree(repo_root, workflow_id, workflow_branch)
        except Exception as exc:
            logger.error("Failed to initialize pulsing for workflow %s: %s", workflow_id, exc)
            return StartPulsingResult(success=False, error=str(exc) or "Failed to initialize pulsing")

        logger.info(
            "Initialized pulsing for workflow %s: branch=%s, worktree=%s",
            workflow_id,
            workflow_branch,
            worktree_path,
        )
        return StartPulsingResult(
            success=True,
            workflow_branch=workflow_branch,
            worktree_path=str(worktree_path),
        )

    def cleanup_workflow(self, workflow_id: str, delete_branch: bool = False) -> None:
        self.git.cleanup_workflow(self._repo_root(), workflow_id, delete_branch)
        logger.info("Cleaned up workflow %s", workflow_id)

    # ------------------------------------------------------------------
    # Preflight
    # ------------------------------------------------------------------

    def create_preflight_setup(self, workflow_id: str, session_id: str | None = None) -> PreflightSetup:
        return self.pulses.create_preflight_setup(workflow_id, session_id)

    def is_preflight_complete(self, workflow_id: str) -> bool:
        setup = self.pulses.get_preflight_setup(workflow_id)
        return setup is not None and setup.status == "completed"

    def is_preflight_failed(self, workflow_id: str) -> bool:
        setup = self.pulses.get_preflight_setup(workflow_id)
        return setup is not None and setup.status == "failed"

    # ------------------------------------------------------------------
    # Pulse execution
    # ------------------------------------------------------------------

    def create_pulses_from_plan(self, workflow_id: str, planned: Iterable[PlannedPulse]) -> list[Pulse]:
        return self.pulses.create_pulses_from_plan(
            workflow_id,
            [(p.id, f"{p.title}: {p.description}" if p.description else p.title) for p in planned],
        )

    def start_next_pulse(self, workflow_id: str, worktree_path: str | Path) -> Pulse | None:
        """Start the oldest proposed pulse; ``None`` when the queue is empty."""
        pulse = self.pulses.get_next_proposed_pulse(workflow_id)
        if pulse is None:
            return None

        repo_root = self._repo_root()
        pulse_branch = self.git.create_pulse_branch(repo_root, workflow_branch_name(workflow_id), pulse.id)
        try:
            self.git.checkout_in_worktree(worktree_path, pulse_branch)
        except Exception:
            # The pulse stays proposed; drop its branch so a retry can recreate it.
            logger.error("Failed to check out %s; removing the branch", pulse_branch)
            self.git.delete_branch(repo_root, pulse_branch, True)
            raise
        self.pulses.start_pulse(pulse.id, pulse_branch, str(worktree_path))

        logger.info("Started pulse %s on branch %s", pulse.id, pulse_branch)
        return self.pulses.get_pulse(pulse.id)

    def get_running_pulse(self, workflow_id: str) -> Pulse | None:
        return self.pulses.get_running_pulse(workflow_id)

    def complete_pulse(
        self,
        pulse_id: str,
        commit_message: str,
        has_unresolved_issues: bool = False,
    ) -> PulseCompletionResult:
        """Commit the pulse's work and merge it into the workflow branch."""
        pulse = self.pulses.get_pulse(pulse_id)
        if pulse is None:
            return PulseCompletionResult(success=False, error="Pulse not found")
        if pulse.status != PulseStatus.RUNNING:
            return PulseCompletionResult(
                success=False,
                error=f"Pulse is not running (status: {pulse.status.value})",
            )
        if not pulse.worktree_path or not pulse.pulse_branch:
            return PulseCompletionResult(success=False, error="Pulse missing worktree or branch information")

        try:
            repo_root = self._repo_root()
            commit_sha = self.git.commit_changes(pulse.worktree_path, commit_message)
            self.git.merge_pulse_branch(
                repo_root,
                pulse.worktree_path,
                workflow_branch_name(pulse.workflow_id),
                pulse.pulse_branch,
            )
            self.pulses.complete_pulse(pulse_id, commit_sha, has_unresolved_issues)
            self.pulses.update_description(pulse_id, commit_message)
        except Exception as exc:
            logger.error("Failed to complete pulse %s: %s", pulse_id, exc)
            return PulseCompletionResult(success=False, error=str(exc) or "Failed to complete pulse")

        has_more = self.pulses.get_next_proposed_pulse(pulse.workflow_id) is not None
        logger.info("Completed pulse %s: %s", pulse_id, commit_sha[:8])
        return PulseCompletionResult(success=True, commit_sha=commit_sha, has_more_pulses=has_more)

    def _recovery_checkpoint(self, pulse: Pulse) -> str | None:
        """Snapshot uncommitted work; failures are logged, never raised."""
        if not pulse.worktree_path:
            return None
        try:
            sha = self.git.create_recovery_checkpoint(pulse.worktree_path)
        except Exception as exc:
            logger.warning("Could not create recovery checkpoint for pulse %s: %s", pulse.id, exc)
            return None
        if sha:
            logger.info("Created recovery checkpoint for pulse %s: %s", pulse.id, sha[:8])
        return sha

    def _require_unfinished(self, pulse_id: str) -> Pulse:
        """Return the pulse; raise before any git call if it has already ended."""
        pulse = self.pulses.get_pulse(pulse_id)
        if pulse is None:
            raise PulseNotFoundError(pulse_id)
        if pulse.is_terminal:
            raise PulseStateError(f"Pulse {pulse_id} already ended with status {pulse.status.value}")
        return pulse

    def fail_pulse(self, pulse_id: str, reason: str) -> None:
        pulse = self._require_unfinished(pulse_id)
        recovery_sha = self._recovery_checkpoint(pulse)
        self.pulses.fail_pulse(pulse_id, reason, recovery_sha)
        logger.info("Failed pulse %s: %s", pulse_id, reason)

    def stop_pulse(self, pulse_id: str) -> None:
        """Stop a pulse at the user's request, snapshotting work in progress."""
        pulse = self._require_unfinished(pulse_id)
        recovery_sha = self._recovery_checkpoint(pulse)
        self.pulses.stop_pulse(pulse_id, recovery_sha)
        logger.info("Stopped pulse %s", pulse_id)

    # ------------------------------------------------------------------
    # Rejection bookkeeping
    # ------------------------------------------------------------------

    def increment_rejection_count(self, pulse_id: str) -> int:
        return self.pulses.increment_rejection_count(pulse_id)

    def get_rejection_count(self, pulse_id: str) -> int:
        pulse = self.pulses.get_pulse(pulse_id)
        return pulse.rejection_count if pulse is not None else 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_pulses(self, workflow_id: str) -> list[Pulse]:
        return self.pulses.get_pulses_for_workflow(workflow_id)

    def are_all_pulses_complete(self, workflow_id: str) -> bool:
        pulses = self.pulses.get_pulses_for_workflow(workflow_id)
        return bool(pulses) and all(p.is_terminal for p in pulses)

    def has_unresolved_issues(self, workflow_id: str) -> bool:
        """True when a pulse finished via the escape hatch and needs human review."""
        return any(p.has_unresolved_issues for p in self.pulses.get_pulses_for_workflow(workflow_id))
