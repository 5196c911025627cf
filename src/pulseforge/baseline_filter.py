"""Filter build/lint/test errors against a workflow's recorded baselines.

After a verification command runs, its output is parsed into individual
errors and warnings.  Any that match a known pre-existing issue recorded
during preflight are set aside so they do not block progress.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from pulseforge.schemas import (
    FilteredOutput,
    ParsedError,
    PreflightBaseline,
    VerificationSource,
)

logger = logging.getLogger(__name__)

# file.ts(10,5): error TS2304: Cannot find name 'foo'
_PAREN_POSITION_RE = re.compile(
    r"^(.+?)\((\d+),(\d+)\):\s*(error|warning)\s+(\w+):\s*(.+)$", re.IGNORECASE
)
# file.ts:10:5 - error Cannot find name 'foo'
_COLON_POSITION_RE = re.compile(
    r"^(.+?):(\d+):(\d+)\s*[-–]\s*(error|warning)\s+(.+)$", re.IGNORECASE
)
# error: something broke
_PREFIX_RE = re.compile(r"^(error|warning):\s*(.+)$", re.IGNORECASE)
# npm ERR! code ELIFECYCLE
_NPM_RE = re.compile(r"^npm\s+(ERR!|WARN)\s*(.+)$", re.IGNORECASE)

_GENERIC_ERROR_MARKERS = ("Error:", "Exception:")


class BaselineSource(Protocol):
    def get_baselines_by_source(
        self, workflow_id: str, source: VerificationSource
    ) -> list[PreflightBaseline]: ...

    def matches_baseline(
        self,
        workflow_id: str,
        source: VerificationSource,
        error_message: str,
        file_path: str | None = None,
    ) -> bool: ...


def _parse_line(line: str) -> ParsedError | None:
    match = _PAREN_POSITION_RE.match(line)
    if match:
        return ParsedError(
            file_path=match.group(1),
            line=int(match.group(2)),
            severity=match.group(4).lower(),
            code=match.group(5),
            message=match.group(6),
        )

    match = _COLON_POSITION_RE.match(line)
    if match:
        return ParsedError(
            file_path=match.group(1),
            line=int(match.group(2)),
            severity=match.group(4).lower(),
            message=match.group(5),
        )

    match = _PREFIX_RE.match(line)
    if match:
        return ParsedError(severity=match.group(1).lower(), message=match.group(2))

    match = _NPM_RE.match(line)
    if match:
        severity = "error" if match.group(1).upper() == "ERR!" else "warning"
        return ParsedError(severity=severity, message=match.group(2))

    if any(marker in line for marker in _GENERIC_ERROR_MARKERS):
        return ParsedError(severity="error", message=line)
    return None


def parse_errors(output: str) -> list[ParsedError]:
    """Extract errors and warnings from raw command output.

    Recognized shapes, tried in order per line:

    - ``path(line,col): error|warning CODE: message``
    - ``path:line:col - error|warning message``
    - ``error|warning: message``
    - ``npm ERR!|WARN message``
    - any line containing ``Error:`` or ``Exception:``

    Lines matching none of these are ignored.
    """
    errors: list[ParsedError] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        parsed = _parse_line(line)
        if parsed is not None:
            errors.append(parsed)
    return errors


def matches_baseline(error: ParsedError, baseline: PreflightBaseline) -> bool:
    """Return True when *error* is the known issue described by *baseline*."""
    if error.severity != baseline.issue_type:
        return False
    error_text = f"{error.code}: {error.message}" if error.code else error.message
    if baseline.pattern not in error_text:
        return False
    if baseline.file_path:
        return bool(error.file_path) and baseline.file_path in error.file_path
    return True


class BaselineFilter:
    """Split parsed command output into new errors and known baseline errors."""

    def __init__(self, repository: BaselineSource) -> None:
        self.repository = repository

    def filter_output(
        self,
        workflow_id: str,
        output: str,
        source: VerificationSource,
    ) -> FilteredOutput:
        all_errors = parse_errors(output)
        baselines = self.repository.get_baselines_by_source(workflow_id, source)

        new_errors: list[ParsedError] = []
        baseline_errors: list[ParsedError] = []
        for error in all_errors:
            if any(matches_baseline(error, b) for b in baselines):
                baseline_errors.append(error)
            else:
                new_errors.append(error)

        logger.debug(
            "Baseline filter (%s/%s): %d parsed, %d known, %d new",
            workflow_id,
            source,
            len(all_errors),
            len(baseline_errors),
            len(new_errors),
        )
        return FilteredOutput(original=output, new_errors=new_errors, baseline_errors=baseline_errors)

    @staticmethod
    def format_filtered_output(filtered: FilteredOutput) -> str:
        """Return the output as shown to the agent, with a note on filtered baselines."""
        result = filtered.original
        if not filtered.baseline_errors:
            return result
        result += "\n\n--- Baseline Filter Note ---\n"
        result += f"{len(filtered.baseline_errors)} issue(s) were filtered as known baselines.\n"
        if filtered.new_errors:
            result += f"{len(filtered.new_errors)} new issue(s) require attention."
        else:
            result += "No new issues detected."
        return result

    def is_baseline_error(
        self,
        workflow_id: str,
        source: VerificationSource,
        error_message: str,
        file_path: str | None = None,
    ) -> bool:
        return self.repository.matches_baseline(workflow_id, source, error_message, file_path)
