"""Tool handlers the acting agent calls during preflight and pulsing.

Every handler returns a :class:`ToolSuccess` or :class:`ToolError`; problems
the agent can fix by trying again are reported as ``ToolError`` with guidance
text, while infrastructure failures propagate as exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from pulseforge.baseline_filter import BaselineFilter
from pulseforge.completion_validator import ESCAPE_HATCH_NOTE, ESCAPE_HATCH_THRESHOLD, CompletionValidator
from pulseforge.config import DEFAULT_PREFLIGHT_TIMEOUT_SECONDS, PulsingConfig
from pulseforge.conversation import ConversationRepository
from pulseforge.judge import build_judge
from pulseforge.orchestrator import GitClient, PulseOrchestrator
from pulseforge.output_comparison import ComparisonCache, EquivalenceJudge, OutputComparisonService
from pulseforge.schemas import (
    IssueType,
    ToolError,
    ToolResult,
    ToolSuccess,
    UnresolvedIssue,
    VerificationCommand,
    VerificationSource,
)
from pulseforge.store import PulseRepository
from pulseforge.verification import CommandRunner, PulseVerifier, default_runner

logger = logging.getLogger(__name__)

CONVERSATIONS_DIR = "conversations"


class PulseTools:
    """Bind the orchestrator, validator, and verifier behind agent tool calls."""

    def __init__(
        self,
        orchestrator: PulseOrchestrator,
        validator: CompletionValidator,
        verifier: PulseVerifier | None = None,
        *,
        runner: CommandRunner = default_runner,
        preflight_timeout_seconds: float = DEFAULT_PREFLIGHT_TIMEOUT_SECONDS,
    ) -> None:
        self.orchestrator = orchestrator
        self.validator = validator
        self.verifier = verifier
        self.runner = runner
        self.preflight_timeout_seconds = preflight_timeout_seconds

    @property
    def pulses(self) -> PulseRepository:
        return self.orchestrator.pulses

    # ------------------------------------------------------------------
    # complete_pulse
    # ------------------------------------------------------------------

    def complete_pulse(
        self,
        workflow_id: str | None,
        session_id: str | None,
        summary: str,
        unresolved_issues: Sequence[UnresolvedIssue] | None = None,
    ) -> ToolResult:
        """Validate, verify, commit, and merge the workflow's running pulse.

        *summary* is a Conventional Commit message and becomes the commit
        message.  *unresolved_issues* is the escape hatch; it is refused until
        the pulse has been rejected enough times.
        """
        if not workflow_id:
            return ToolError(message="complete_pulse requires a workflow context")
        if not session_id:
            return ToolError(message="complete_pulse requires a session context")

        pulse = self.orchestrator.get_running_pulse(workflow_id)
        if pulse is None:
            return ToolError(message="No running pulse found for this workflow")

        acknowledged = bool(unresolved_issues)
        validation = self.validator.validate_completion(pulse.id, session_id, acknowledged)
        if not validation.valid:
            self.validator.reject_completion(pulse.id)
            logger.info("Pulse completion rejected for %s: %s", pulse.id, validation.rejection_reason)
            return ToolError(
                message=validation.rejection_reason or "Pulse completion rejected",
                failures=validation.failures,
            )

        if not acknowledged and self.verifier is not None and pulse.worktree_path:
            report = self.verifier.verify(workflow_id, pulse.worktree_path)
            if not report.passed:
                count = self.validator.reject_completion(pulse.id)
                issues = "\n".join(f"- {issue}" for issue in report.failures)
                message = (
                    "Cannot complete pulse: verification commands report new issues:\n\n"
                    f"{issues}\n\nPlease fix these issues before calling complete_pulse."
                )
                if count >= ESCAPE_HATCH_THRESHOLD:
                    message += f"\n\n{ESCAPE_HATCH_NOTE}"
                if report.output:
                    message += f"\n\nVerification output:\n{report.output}"
                return ToolError(message=message)

        logger.info("Pulse completion validated for %s: %s", pulse.id, summary)
        result = self.orchestrator.complete_pulse(pulse.id, summary, acknowledged)
        if not result.success:
            return ToolError(message=result.error or "Failed to complete pulse")

        lines = [
            "Pulse completed. Changes committed and merged.",
            f"Commit message: {summary}",
        ]
        if acknowledged:
            lines.append(
                f"Warning: {len(unresolved_issues or [])} unresolved issue(s) acknowledged. "
                "Orchestration halted for review."
            )
        elif result.has_more_pulses:
            lines.append("More pulses remain in this workflow.")
        else:
            lines.append("All pulses are complete.")
        return ToolSuccess(output="\n".join(lines))

    # ------------------------------------------------------------------
    # Preflight tools
    # ------------------------------------------------------------------

    def complete_preflight(
        self,
        workflow_id: str | None,
        worktree_path: str | Path | None,
        summary: str,
        build_success: bool,
        verification_commands: Sequence[VerificationCommand] = (),
    ) -> ToolResult:
        """Finish preflight and record each verification command's baseline output."""
        if not workflow_id:
            return ToolError(message="complete_preflight requires a workflow context")
        if self.pulses.get_preflight_setup(workflow_id) is None:
            return ToolError(message=f"No preflight setup in progress for workflow {workflow_id}")
        if not build_success:
            return ToolError(
                message=(
                    "Cannot complete preflight: build did not succeed. Fix build issues or "
                    "record them as baselines if they are pre-existing."
                )
            )

        self.pulses.complete_preflight_setup(workflow_id, verification_commands)

        recorded = 0
        if worktree_path and verification_commands:
            for verification in verification_commands:
                try:
                    run = self.runner(verification.command, Path(worktree_path), self.preflight_timeout_seconds)
                except OSError as exc:
                    logger.error("Failed to execute verification command %r: %s", verification.command, exc)
                    continue
                if run.timed_out:
                    logger.error(
                        "Verification command %r timed out after %ss; no baseline recorded",
                        verification.command,
                        self.preflight_timeout_seconds,
                    )
                    continue
                self.pulses.record_command_baseline(
                    workflow_id,
                    verification.command,
                    verification.source,
                    run.stdout,
                    run.stderr,
                    run.exit_code,
                )
                recorded += 1
                logger.info(
                    "Recorded baseline for command %r (exit code: %d)",
                    verification.command,
                    run.exit_code,
                )

        logger.info("Preflight complete for workflow %s: %s", workflow_id, summary)
        return ToolSuccess(
            output=(
                f"Preflight complete. {len(verification_commands)} verification command(s), "
                f"{recorded} command baseline(s) recorded, "
                f"{self.pulses.count_baselines(workflow_id)} known issue(s) recorded."
            )
        )

    def record_baseline(
        self,
        workflow_id: str | None,
        issue_type: IssueType,
        source: VerificationSource,
        pattern: str,
        file_path: str | None = None,
        description: str | None = None,
    ) -> ToolResult:
        """Record a pre-existing issue so it is not reported as new."""
        if not workflow_id:
            return ToolError(message="record_baseline requires a workflow context")
        if not pattern.strip():
            return ToolError(message="record_baseline requires a non-empty pattern")
        baseline = self.pulses.record_baseline(
            workflow_id,
            issue_type,
            source,
            pattern,
            file_path=file_path,
            description=description,
        )
        where = f" in {file_path}" if file_path else ""
        return ToolSuccess(output=f"Recorded {source} {issue_type} baseline {baseline.id}: {pattern}{where}")


def build_pulse_tools(
    config: PulsingConfig,
    *,
    pulses: PulseRepository | None = None,
    conversations: ConversationRepository | None = None,
    git: GitClient | None = None,
    judge: EquivalenceJudge | None = None,
    runner: CommandRunner = default_runner,
) -> PulseTools:
    """Assemble repositories, orchestrator, validator, and verifier from *config*.

    State and conversation history live under ``config.state_path()``; any
    collaborator passed explicitly is used as-is.
    """
    if pulses is None:
        pulses = PulseRepository.for_state_dir(config.state_path())
    if conversations is None:
        conversations = ConversationRepository(config.state_path() / CONVERSATIONS_DIR)
    cache = ComparisonCache(
        max_entries=config.comparison_cache_max_entries,
        ttl_seconds=config.comparison_cache_ttl_seconds,
    )
    comparison = OutputComparisonService(judge if judge is not None else build_judge(config), cache)
    verifier = PulseVerifier(
        pulses,
        comparison,
        BaselineFilter(pulses),
        log_dir=config.logs_path(),
        runner=runner,
        timeout_seconds=config.verification_timeout_seconds,
    )
    return PulseTools(
        PulseOrchestrator(pulses, config.project_root, git=git),
        CompletionValidator(conversations, pulses),
        verifier,
        runner=runner,
        preflight_timeout_seconds=config.preflight_timeout_seconds,
    )
