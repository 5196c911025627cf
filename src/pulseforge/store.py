"""Durable pulse state: pulses, preflight setup, and recorded baselines.

State for a project lives in a single JSON document under the state directory
(``.pulseforge/pulses.json`` by default).  Every mutation rewrites the file
atomically so a crash never leaves a half-written document behind.  Passing
``path=None`` keeps the state in memory only.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import tempfile
import threading
import time
from collections.abc import Iterable
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from pulseforge.schemas import (
    TERMINAL_STATUSES,
    CommandBaseline,
    IssueType,
    PreflightBaseline,
    PreflightSetup,
    Pulse,
    PulseStatus,
    VerificationCommand,
    VerificationSource,
)

logger = logging.getLogger(__name__)

STATE_FILE = "pulses.json"
_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01


class PulseStateError(ValueError):
    """Raised when a requested transition is not legal for a pulse's status."""


class PulseNotFoundError(KeyError):
    """Raised when a pulse id is unknown."""


class _StateDocument(BaseModel):
    pulses: list[Pulse] = Field(default_factory=list)
    preflight_setups: list[PreflightSetup] = Field(default_factory=list)
    baselines: list[PreflightBaseline] = Field(default_factory=list)
    command_baselines: list[CommandBaseline] = Field(default_factory=list)


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class PulseRepository:
    """Data access for pulses, preflight setup, and baselines."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._state = self._load()

    @classmethod
    def for_state_dir(cls, state_dir: str | Path) -> PulseRepository:
        return cls(Path(state_dir) / STATE_FILE)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> _StateDocument:
        if self.path is None or not self.path.exists():
            return _StateDocument()
        try:
            raw = self.path.read_text(encoding="utf-8")
            if not raw.strip():
                logger.warning("Pulse state file is empty; starting fresh: %s", self.path)
                return _StateDocument()
            return _StateDocument.model_validate_json(raw)
        except (OSError, ValidationError) as exc:
            logger.warning("Could not load pulse state %s: %s", self.path, exc)
            return _StateDocument()

    def _save(self) -> None:
        if self.path is None:
            return
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = self._state.model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            _replace_file_with_retry(tmp_path, path)
        finally:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Pulse queries
    # ------------------------------------------------------------------

    def _find(self, pulse_id: str) -> Pulse:
        for pulse in self._state.pulses:
            if pulse.id == pulse_id:
                return pulse
        raise PulseNotFoundError(pulse_id)

    def get_pulse(self, pulse_id: str) -> Pulse | None:
        with self._lock:
            try:
                return self._find(pulse_id).model_copy()
            except PulseNotFoundError:
                return None

    def get_pulses_for_workflow(self, workflow_id: str) -> list[Pulse]:
        """Return a workflow's pulses in creation order."""
        with self._lock:
            return [p.model_copy() for p in self._state.pulses if p.workflow_id == workflow_id]

    def get_next_proposed_pulse(self, workflow_id: str) -> Pulse | None:
        for pulse in self.get_pulses_for_workflow(workflow_id):
            if pulse.status == PulseStatus.PROPOSED:
                return pulse
        return None

    def get_running_pulse(self, workflow_id: str) -> Pulse | None:
        for pulse in self.get_pulses_for_workflow(workflow_id):
            if pulse.status == PulseStatus.RUNNING:
                return pulse
        return None

    # ------------------------------------------------------------------
    # Pulse mutations
    # ------------------------------------------------------------------

    def create_pulse(
        self,
        workflow_id: str,
        description: str | None = None,
        planned_pulse_id: str | None = None,
    ) -> Pulse:
        pulse = Pulse(
            workflow_id=workflow_id,
            description=description,
            planned_pulse_id=planned_pulse_id,
        )
        with self._lock:
            self._state.pulses.append(pulse)
            self._save()
        return pulse.model_copy()

    def create_pulses_from_plan(
        self,
        workflow_id: str,
        pulse_defs: Iterable[tuple[str, str]],
    ) -> list[Pulse]:
        """Create ``proposed`` pulses from ``(planned_id, description)`` pairs."""
        created: list[Pulse] = []
        with self._lock:
            for planned_id, description in pulse_defs:
                pulse = Pulse(
                    workflow_id=workflow_id,
                    planned_pulse_id=planned_id,
                    description=description,
                )
                self._state.pulses.append(pulse)
                created.append(pulse.model_copy())
            self._save()
        return created

    def start_pulse(self, pulse_id: str, pulse_branch: str, worktree_path: str) -> None:
        with self._lock:
            pulse = self._find(pulse_id)
            if pulse.status != PulseStatus.PROPOSED:
                raise PulseStateError(f"Cannot start pulse {pulse_id} from status {pulse.status.value}")
            running = [
                p
                for p in self._state.pulses
                if p.workflow_id == pulse.workflow_id and p.status == PulseStatus.RUNNING
            ]
            if running:
                raise PulseStateError(
                    f"Workflow {pulse.workflow_id} already has a running pulse: {running[0].id}"
                )
            pulse.status = PulseStatus.RUNNING
            pulse.pulse_branch = pulse_branch
            pulse.worktree_path = worktree_path
            pulse.started_at = _now()
            self._save()

    def complete_pulse(self, pulse_id: str, commit_sha: str, has_unresolved_issues: bool) -> None:
        with self._lock:
            pulse = self._find(pulse_id)
            if pulse.status != PulseStatus.RUNNING:
                raise PulseStateError(
                    f"Cannot complete pulse {pulse_id} from status {pulse.status.value}"
                )
            pulse.status = PulseStatus.SUCCEEDED
            pulse.commit_sha = commit_sha
            pulse.has_unresolved_issues = bool(has_unresolved_issues)
            pulse.ended_at = _now()
            self._save()

    def _end_pulse(
        self,
        pulse_id: str,
        status: PulseStatus,
        recovery_commit_sha: str | None,
        reason: str | None = None,
    ) -> None:
        with self._lock:
            pulse = self._find(pulse_id)
            if pulse.status in TERMINAL_STATUSES:
                raise PulseStateError(
                    f"Pulse {pulse_id} already ended with status {pulse.status.value}"
                )
            pulse.status = status
            pulse.recovery_commit_sha = recovery_commit_sha
            if reason is not None:
                pulse.failure_reason = reason
            pulse.ended_at = _now()
            self._save()

    def fail_pulse(self, pulse_id: str, reason: str, recovery_commit_sha: str | None = None) -> None:
        self._end_pulse(pulse_id, PulseStatus.FAILED, recovery_commit_sha, reason=reason)

    def stop_pulse(self, pulse_id: str, recovery_commit_sha: str | None = None) -> None:
        self._end_pulse(pulse_id, PulseStatus.STOPPED, recovery_commit_sha)

    def increment_rejection_count(self, pulse_id: str) -> int:
        """Increment and return the pulse's rejection count."""
        with self._lock:
            pulse = self._find(pulse_id)
            if pulse.status != PulseStatus.RUNNING:
                raise PulseStateError(
                    f"Cannot reject completion of pulse {pulse_id} in status {pulse.status.value}"
                )
            pulse.rejection_count += 1
            self._save()
            return pulse.rejection_count

    def update_description(self, pulse_id: str, description: str) -> None:
        with self._lock:
            self._find(pulse_id).description = description
            self._save()

    # ------------------------------------------------------------------
    # Preflight setup
    # ------------------------------------------------------------------

    def _find_setup(self, workflow_id: str) -> PreflightSetup | None:
        for setup in self._state.preflight_setups:
            if setup.workflow_id == workflow_id:
                return setup
        return None

    def get_preflight_setup(self, workflow_id: str) -> PreflightSetup | None:
        with self._lock:
            setup = self._find_setup(workflow_id)
            return setup.model_copy(deep=True) if setup else None

    def create_preflight_setup(self, workflow_id: str, session_id: str | None = None) -> PreflightSetup:
        """Create the workflow's preflight record, restarting an existing one."""
        with self._lock:
            setup = self._find_setup(workflow_id)
            if setup is not None:
                logger.warning("Preflight setup already exists for %s; restarting it", workflow_id)
                self._state.preflight_setups.remove(setup)
            setup = PreflightSetup(workflow_id=workflow_id, session_id=session_id)
            self._state.preflight_setups.append(setup)
            self._save()
            return setup.model_copy(deep=True)

    def _require_setup(self, workflow_id: str) -> PreflightSetup:
        setup = self._find_setup(workflow_id)
        if setup is None:
            raise KeyError(f"No preflight setup for workflow {workflow_id}")
        return setup

    def update_preflight_progress(self, workflow_id: str, message: str) -> None:
        with self._lock:
            self._require_setup(workflow_id).progress_message = message
            self._save()

    def complete_preflight_setup(
        self,
        workflow_id: str,
        verification_commands: Iterable[VerificationCommand] | None = None,
    ) -> None:
        with self._lock:
            setup = self._require_setup(workflow_id)
            setup.status = "completed"
            setup.verification_commands = list(verification_commands or [])
            setup.completed_at = _now()
            self._save()

    def fail_preflight_setup(self, workflow_id: str, error: str) -> None:
        with self._lock:
            setup = self._require_setup(workflow_id)
            setup.status = "failed"
            setup.error_message = error
            setup.completed_at = _now()
            self._save()

    # ------------------------------------------------------------------
    # Issue baselines
    # ------------------------------------------------------------------

    def record_baseline(
        self,
        workflow_id: str,
        issue_type: IssueType,
        source: VerificationSource,
        pattern: str,
        file_path: str | None = None,
        description: str | None = None,
    ) -> PreflightBaseline:
        baseline = PreflightBaseline(
            workflow_id=workflow_id,
            issue_type=issue_type,
            source=source,
            pattern=pattern,
            file_path=file_path,
            description=description,
        )
        with self._lock:
            self._state.baselines.append(baseline)
            self._save()
        return baseline

    def get_baselines(self, workflow_id: str) -> list[PreflightBaseline]:
        with self._lock:
            return [b for b in self._state.baselines if b.workflow_id == workflow_id]

    def get_baselines_by_source(
        self, workflow_id: str, source: VerificationSource
    ) -> list[PreflightBaseline]:
        return [b for b in self.get_baselines(workflow_id) if b.source == source]

    def count_baselines(self, workflow_id: str) -> int:
        return len(self.get_baselines(workflow_id))

    def matches_baseline(
        self,
        workflow_id: str,
        source: VerificationSource,
        error_message: str,
        file_path: str | None = None,
    ) -> bool:
        """Return True when *error_message* matches a recorded baseline pattern."""
        for baseline in self.get_baselines_by_source(workflow_id, source):
            if baseline.pattern not in error_message:
                continue
            if not baseline.file_path:
                return True
            if file_path and baseline.file_path in file_path:
                return True
        return False

    # ------------------------------------------------------------------
    # Command baselines
    # ------------------------------------------------------------------

    def record_command_baseline(
        self,
        workflow_id: str,
        command: str,
        source: VerificationSource,
        stdout: str,
        stderr: str,
        exit_code: int,
    ) -> CommandBaseline:
        """Store a command's preflight output, replacing any earlier recording."""
        recorded = CommandBaseline(
            workflow_id=workflow_id,
            command=command,
            source=source,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
        )
        with self._lock:
            self._state.command_baselines = [
                b
                for b in self._state.command_baselines
                if not (b.workflow_id == workflow_id and b.command == command)
            ]
            self._state.command_baselines.append(recorded)
            self._save()
        return recorded

    def get_command_baseline(self, workflow_id: str, command: str) -> CommandBaseline | None:
        with self._lock:
            for baseline in self._state.command_baselines:
                if baseline.workflow_id == workflow_id and baseline.command == command:
                    return baseline
        return None

    def get_command_baselines(self, workflow_id: str) -> list[CommandBaseline]:
        with self._lock:
            return [b for b in self._state.command_baselines if b.workflow_id == workflow_id]


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    """Replace *dst* with *src*, retrying on transient Windows file-lock races."""
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        except OSError as exc:
            if exc.errno != 13:
                raise
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error
