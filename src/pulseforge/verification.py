"""Re-run a workflow's verification commands after a pulse and compare to preflight."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path

from pulseforge.baseline_filter import BaselineFilter
from pulseforge.config import DEFAULT_VERIFICATION_TIMEOUT_SECONDS
from pulseforge.output_comparison import OutputComparisonService
from pulseforge.process import dump_timeout_log, run_command
from pulseforge.schemas import CommandOutput, CommandRun, VerificationCommand, VerificationReport
from pulseforge.store import PulseRepository

logger = logging.getLogger(__name__)

CommandRunner = Callable[[str, Path, float], CommandRun]


def default_runner(command: str, cwd: Path, timeout_seconds: float) -> CommandRun:
    return run_command(command, cwd, timeout_seconds)


def _log_label(command: str) -> str:
    label = re.sub(r"[^A-Za-z0-9]+", "-", command).strip("-").lower()
    return f"verify_{label[:40] or 'command'}"


class PulseVerifier:
    """Run preflight verification commands in a worktree and judge the results.

    Commands run in their recorded order.  A command fails verification when
    it times out, or when its output is not equivalent to the output recorded
    for it during preflight (or, lacking a recording, when it exits non-zero).
    """

    def __init__(
        self,
        pulses: PulseRepository,
        comparison: OutputComparisonService,
        baseline_filter: BaselineFilter,
        *,
        log_dir: str | Path,
        runner: CommandRunner = default_runner,
        timeout_seconds: float = DEFAULT_VERIFICATION_TIMEOUT_SECONDS,
    ) -> None:
        self.pulses = pulses
        self.comparison = comparison
        self.baseline_filter = baseline_filter
        self.log_dir = Path(log_dir)
        self.runner = runner
        self.timeout_seconds = timeout_seconds

    def verify(self, workflow_id: str, worktree_path: str | Path) -> VerificationReport:
        setup = self.pulses.get_preflight_setup(workflow_id)
        commands = setup.verification_commands if setup is not None else []
        if not commands:
            return VerificationReport(passed=True)

        failures: list[str] = []
        sections: list[str] = []
        for verification in commands:
            failure, section = self._verify_one(workflow_id, Path(worktree_path), verification)
            failures.extend(failure)
            sections.append(section)

        passed = not failures
        logger.info(
            "Verification for workflow %s %s (%d command(s), %d issue(s))",
            workflow_id,
            "passed" if passed else "failed",
            len(commands),
            len(failures),
        )
        return VerificationReport(passed=passed, failures=failures, output="\n\n".join(sections))

    def _verify_one(
        self,
        workflow_id: str,
        worktree_path: Path,
        verification: VerificationCommand,
    ) -> tuple[list[str], str]:
        command = verification.command
        run = self.runner(command, worktree_path, self.timeout_seconds)
        header = f"$ {command}"

        if run.timed_out:
            log_path = dump_timeout_log(
                self.log_dir,
                label=_log_label(command),
                command=command,
                timeout_seconds=self.timeout_seconds,
                stdout=run.stdout,
                stderr=run.stderr,
            )
            message = f"Command '{command}' timed out after {self.timeout_seconds}s"
            if log_path is not None:
                message += f" (partial output saved to {log_path})"
            return [message], f"{header}\n{message}"

        current = CommandOutput(stdout=run.stdout, stderr=run.stderr, exit_code=run.exit_code)
        filtered = self.baseline_filter.filter_output(workflow_id, current.combined, verification.source)
        section = f"{header}\n{self.baseline_filter.format_filtered_output(filtered)}".rstrip()

        recorded = self.pulses.get_command_baseline(workflow_id, command)
        if recorded is None:
            if current.exit_code != 0:
                return [f"Command '{command}' failed (exit code {current.exit_code})"], section
            return [], section

        result = self.comparison.compare_outputs(workflow_id, command, recorded, current)
        if result.are_equivalent:
            return [], section
        issues = list(result.new_issues) or [f"Command '{command}' output differs from its baseline"]
        return issues, section
