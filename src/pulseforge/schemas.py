"""Pydantic models for structured data throughout the pulsing engine."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

VerificationSource = Literal["build", "lint", "test"]
IssueType = Literal["error", "warning"]


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    """Return a short random identifier such as ``pulse_1a2b3c4d5e6f``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Pulses
# ---------------------------------------------------------------------------

class PulseStatus(str, Enum):
    """Lifecycle states of a pulse."""

    PROPOSED = "proposed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({PulseStatus.SUCCEEDED, PulseStatus.FAILED, PulseStatus.STOPPED})


class Pulse(BaseModel):
    """One ordered, independently committed unit of agent-performed work."""

    id: str = Field(default_factory=lambda: new_id("pulse"))
    workflow_id: str
    planned_pulse_id: str | None = None
    description: str | None = None
    status: PulseStatus = PulseStatus.PROPOSED
    pulse_branch: str | None = None
    worktree_path: str | None = None
    commit_sha: str | None = None
    recovery_commit_sha: str | None = None
    rejection_count: int = 0
    has_unresolved_issues: bool = False
    created_at: str = Field(default_factory=utc_now)
    started_at: str | None = None
    ended_at: str | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class PlannedPulse(BaseModel):
    """A pulse definition taken from an approved plan."""

    id: str
    title: str
    description: str = ""


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------

class VerificationCommand(BaseModel):
    """A command re-run after every pulse, tagged with its baseline source."""

    command: str
    source: VerificationSource


class PreflightSetup(BaseModel):
    """Per-workflow environment setup session and its verification commands."""

    id: str = Field(default_factory=lambda: new_id("preflight"))
    workflow_id: str
    session_id: str | None = None
    status: Literal["running", "completed", "failed"] = "running"
    progress_message: str | None = None
    error_message: str | None = None
    verification_commands: list[VerificationCommand] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None


class PreflightBaseline(BaseModel):
    """A known pre-existing issue that must not block progress."""

    id: str = Field(default_factory=lambda: new_id("baseline"))
    workflow_id: str
    issue_type: IssueType
    source: VerificationSource
    pattern: str
    file_path: str | None = None
    description: str | None = None
    recorded_at: str = Field(default_factory=utc_now)


class CommandOutput(BaseModel):
    """Captured stdout/stderr/exit code of one command run."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


class CommandBaseline(CommandOutput):
    """Recorded output of a verification command during preflight."""

    workflow_id: str
    command: str
    source: VerificationSource
    recorded_at: str = Field(default_factory=utc_now)


class CommandRun(CommandOutput):
    """Result of spawning a command, including timeout metadata."""

    timed_out: bool = False
    duration_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Comparison / filtering
# ---------------------------------------------------------------------------

class ComparisonResult(BaseModel):
    """Judgment of whether two command outputs represent the same outcome.

    Field aliases match the structured response requested from the judge so
    the payload validates as-is.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    are_equivalent: bool = Field(alias="areEquivalent")
    is_strictly_improvement: bool = Field(default=False, alias="isStrictlyImprovement")
    new_issues: tuple[str, ...] = Field(default=(), alias="newIssues")


class ParsedError(BaseModel):
    """An error or warning extracted from build/lint/test output."""

    message: str
    file_path: str | None = None
    line: int | None = None
    code: str | None = None
    severity: IssueType


class FilteredOutput(BaseModel):
    """Parsed errors split into new ones and known baseline ones."""

    original: str
    new_errors: list[ParsedError] = Field(default_factory=list)
    baseline_errors: list[ParsedError] = Field(default_factory=list)

    @property
    def has_new_errors(self) -> bool:
        return bool(self.new_errors)


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------

class ConversationTurn(BaseModel):
    """One completed turn of an agent session."""

    id: str = Field(default_factory=lambda: new_id("turn"))
    session_id: str
    role: Literal["user", "assistant"]
    status: str = "completed"
    created_at: str = Field(default_factory=utc_now)


class ToolInvocation(BaseModel):
    """A tool call recorded against a turn, with JSON-encoded input/output."""

    id: str = Field(default_factory=lambda: new_id("tool"))
    turn_id: str
    tool_name: str
    input_json: str = "{}"
    output_json: str | None = None
    success: bool | None = None
    created_at: str = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Validation / operation results
# ---------------------------------------------------------------------------

class ToolFailure(BaseModel):
    """A failing tool invocation that blocks pulse completion."""

    tool_name: str
    reason: str
    turn_id: str


class ValidationResult(BaseModel):
    """Outcome of validating an agent's completion claim."""

    valid: bool
    rejection_reason: str | None = None
    escape_hatch_available: bool = False
    failures: list[ToolFailure] = Field(default_factory=list)


class StartPulsingResult(BaseModel):
    """Outcome of creating the workflow branch and worktree."""

    success: bool
    workflow_branch: str | None = None
    worktree_path: str | None = None
    error: str | None = None


class PulseCompletionResult(BaseModel):
    """Outcome of committing and merging a pulse."""

    success: bool
    commit_sha: str | None = None
    has_more_pulses: bool = False
    error: str | None = None


class VerificationReport(BaseModel):
    """Outcome of re-running the preflight verification commands."""

    passed: bool
    failures: list[str] = Field(default_factory=list)
    output: str = ""


class UnresolvedIssue(BaseModel):
    """An issue the agent acknowledges it cannot fix."""

    issue: str
    reason: str


# ---------------------------------------------------------------------------
# Tagged tool results
# ---------------------------------------------------------------------------

class ToolSuccess(BaseModel):
    """Successful tool call; ``output`` is shown to the agent."""

    kind: Literal["success"] = "success"
    output: str = ""


class ToolError(BaseModel):
    """Unsuccessful tool call with actionable guidance for the agent."""

    kind: Literal["error"] = "error"
    message: str
    failures: list[ToolFailure] = Field(default_factory=list)

    def render(self) -> str:
        return f"Error: {self.message}"


ToolResult = Annotated[ToolSuccess | ToolError, Field(discriminator="kind")]


def tool_result_payload(result: ToolResult) -> dict[str, Any]:
    """Return the JSON-serializable payload recorded as a tool's output.

    ``text`` is what the agent sees: the output on success, the rendered
    error otherwise.
    """
    payload = result.model_dump()
    success = isinstance(result, ToolSuccess)
    payload["success"] = success
    payload["text"] = result.output if success else result.render()
    return payload
