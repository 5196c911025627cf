"""Gatekeeper for an agent's claim that a pulse is done.

Completion is judged from the agent's recent tool calls.  Each rejection is
counted against the pulse; after ``ESCAPE_HATCH_THRESHOLD`` rejections the
agent may instead acknowledge issues it cannot fix, which halts automatic
progression for human review.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from collections.abc import Iterable
from typing import Protocol

from pulseforge.schemas import (
    ConversationTurn,
    Pulse,
    ToolFailure,
    ToolInvocation,
    ValidationResult,
)

logger = logging.getLogger(__name__)

ESCAPE_HATCH_THRESHOLD = 2
RECENT_ASSISTANT_TURNS = 5
SHELL_TOOL = "shell"
FAILURE_TOOLS = frozenset({SHELL_TOOL, "edit_file", "multi_edit", "write_file"})

ESCAPE_HATCH_PREMATURE_MESSAGE = (
    "Cannot acknowledge unresolved issues yet. Please fix the issues first."
)
ESCAPE_HATCH_NOTE = (
    "Alternatively, if these issues genuinely cannot be fixed (e.g., pre-existing flaky "
    "tests), you may use the unresolvedIssues parameter to acknowledge them."
)


class ConversationSource(Protocol):
    def load_session_turns(self, session_id: str) -> list[ConversationTurn]: ...

    def get_tools(self, turn_id: str) -> list[ToolInvocation]: ...


class PulseSource(Protocol):
    def get_pulse(self, pulse_id: str) -> Pulse | None: ...

    def increment_rejection_count(self, pulse_id: str) -> int: ...


def invocation_target(invocation: ToolInvocation) -> str:
    """Return the logical target a tool call acts on.

    All shell calls share one target; file tools are keyed by tool and path.
    """
    if invocation.tool_name == SHELL_TOOL:
        return SHELL_TOOL
    path = ""
    try:
        data = json.loads(invocation.input_json or "{}")
    except json.JSONDecodeError:
        data = {}
    if isinstance(data, dict):
        path = str(data.get("path") or data.get("file_path") or "")
    return f"{invocation.tool_name}:{path}"


def latest_invocations_by_target(
    invocations: Iterable[ToolInvocation],
) -> OrderedDict[str, ToolInvocation]:
    """Keep only the most recent call per target; later calls overwrite earlier ones."""
    latest: OrderedDict[str, ToolInvocation] = OrderedDict()
    for invocation in invocations:
        if invocation.tool_name not in FAILURE_TOOLS:
            continue
        key = invocation_target(invocation)
        latest.pop(key, None)
        latest[key] = invocation
    return latest


def failure_reason(invocation: ToolInvocation) -> str | None:
    """Return why *invocation* failed, or ``None`` if it did not."""
    if invocation.success is False and not invocation.output_json:
        return "Tool returned failure"
    if not invocation.output_json:
        return None
    try:
        output = json.loads(invocation.output_json)
    except json.JSONDecodeError:
        return None
    if not isinstance(output, dict):
        return None
    if output.get("success") is False:
        return str(output.get("error") or "Tool returned failure")
    if invocation.tool_name == SHELL_TOOL:
        exit_code = output.get("exitCode", output.get("exit_code"))
        if isinstance(exit_code, int) and exit_code != 0:
            return f"Exit code {exit_code}"
    return None


class CompletionValidator:
    """Judge completion claims; never mutates pulse state except via ``reject_completion``."""

    def __init__(self, conversations: ConversationSource, pulses: PulseSource) -> None:
        self.conversations = conversations
        self.pulses = pulses

    def validate_completion(
        self,
        pulse_id: str,
        session_id: str,
        has_unresolved_issues: bool,
    ) -> ValidationResult:
        pulse = self.pulses.get_pulse(pulse_id)
        if pulse is None:
            return ValidationResult(valid=False, rejection_reason="Pulse not found")

        escape_hatch_available = pulse.rejection_count >= ESCAPE_HATCH_THRESHOLD

        if has_unresolved_issues:
            if escape_hatch_available:
                logger.info("Pulse %s completed with acknowledged unresolved issues", pulse_id)
                return ValidationResult(valid=True, escape_hatch_available=True)
            return ValidationResult(
                valid=False,
                rejection_reason=ESCAPE_HATCH_PREMATURE_MESSAGE,
                escape_hatch_available=False,
            )

        failures = self.detect_tool_failures(session_id)
        if not failures:
            return ValidationResult(valid=True, escape_hatch_available=escape_hatch_available)

        failure_list = "\n".join(f"- {f.tool_name}: {f.reason}" for f in failures)
        reason = (
            "Cannot complete pulse: there are unresolved tool failures:\n\n"
            f"{failure_list}\n\n"
            "Please fix these issues before calling complete_pulse."
        )
        if escape_hatch_available:
            reason += f"\n\n{ESCAPE_HATCH_NOTE}"

        return ValidationResult(
            valid=False,
            rejection_reason=reason,
            escape_hatch_available=escape_hatch_available,
            failures=failures,
        )

    def detect_tool_failures(self, session_id: str) -> list[ToolFailure]:
        """Return failures among the latest tool calls of the last assistant turns."""
        turns = [t for t in self.conversations.load_session_turns(session_id) if t.role == "assistant"]
        recent = turns[-RECENT_ASSISTANT_TURNS:]

        invocations: list[ToolInvocation] = []
        for turn in recent:
            invocations.extend(self.conversations.get_tools(turn.id))

        failures: list[ToolFailure] = []
        for invocation in latest_invocations_by_target(invocations).values():
            reason = failure_reason(invocation)
            if reason is not None:
                failures.append(
                    ToolFailure(tool_name=invocation.tool_name, reason=reason, turn_id=invocation.turn_id)
                )
        return failures

    def reject_completion(self, pulse_id: str) -> int:
        """Record a rejected completion and return the new rejection count."""
        count = self.pulses.increment_rejection_count(pulse_id)
        logger.info("Rejected completion of pulse %s (rejections: %d)", pulse_id, count)
        return count
