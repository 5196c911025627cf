"""Two-tier comparison of build/test output against a recorded baseline.

A cheap deterministic fast path (exit codes plus normalized text) settles
most comparisons.  Whatever it cannot settle goes to a language-model judge;
equivalent judgments are cached so identical output pairs are not re-judged.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

from pulseforge.schemas import CommandOutput, ComparisonResult

logger = logging.getLogger(__name__)

LLM_MAX_ATTEMPTS = 2
LLM_RETRY_BACKOFF_SECONDS = 1.0
DEFAULT_CACHE_MAX_ENTRIES = 512
DEFAULT_CACHE_TTL_SECONDS = 3600.0

ERROR_KEYWORDS: tuple[str, ...] = (
    "error",
    "failed",
    "failure",
    "exception",
    "fatal",
    "panic",
    "cannot",
    "could not",
    "unable to",
)

JUDGE_SYSTEM_PROMPT = (
    "Compare build/test outputs. Determine if they represent equivalent outcomes. "
    "Ignore timing differences, test ordering, and cosmetic formatting. "
    "Focus on actual errors, failures, and warnings. "
    "Previously failing tests in the Baseline output that are now passing are not "
    "considered new issues. "
    'Respond with a JSON object: {"areEquivalent": bool, "isStrictlyImprovement": bool, '
    '"newIssues": [string]}. isStrictlyImprovement is true only when the current output '
    "has no regressions, errors, failures, or warnings relative to the baseline; newIssues "
    "lists problems in the current output that were not present in the baseline."
)

EquivalenceJudge = Callable[[str, str], ComparisonResult]

_NORMALIZERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\[\d+ms\]", re.IGNORECASE), "[Xms]"),
    (re.compile(r"\[\d+\.\d+s\]", re.IGNORECASE), "[Xs]"),
    (re.compile(r"\b\d+(\.\d+)?ms\b", re.IGNORECASE), "Xms"),
    (re.compile(r"\b\d+(\.\d+)?s\b", re.IGNORECASE), "Xs"),
    (re.compile(r"\b\d{1,2}:\d{2}:\d{2}\b"), "HH:MM:SS"),
    (
        re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:?\d{2})?"),
        "ISO_TIMESTAMP",
    ),
    (re.compile(r"\d{4}[-/]\d{2}[-/]\d{2}"), "DATE"),
    (re.compile(r":\d+:\d+"), ":X:X"),
    (re.compile(r"\(\d+,\d+\)"), "(X,X)"),
    (re.compile(r"\b\d+\s+(passed|failed|skipped|pending|todo)\b", re.IGNORECASE), r"X \1"),
    (re.compile(r"\b\d+\s+(tests?|specs?|suites?)\b", re.IGNORECASE), r"X \1"),
    (re.compile(r"\b\d+(\.\d+)?\s*(mb|kb|gb|bytes?)\b", re.IGNORECASE), r"X\2"),
)
_INLINE_WHITESPACE_RE = re.compile(r"[ \t]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def strip_numbers(text: str) -> str:
    """Replace run-to-run noise in command output with stable placeholders.

    Timing markers, clock times, ISO timestamps, dates, ``line:col`` and
    ``(line,col)`` positions, test counts, and memory sizes are replaced;
    then whitespace is collapsed, line endings normalized, and every line and
    the whole string trimmed.  The result is a fixed point:
    ``strip_numbers(strip_numbers(x)) == strip_numbers(x)``.
    """
    result = text
    for pattern, replacement in _NORMALIZERS:
        result = pattern.sub(replacement, result)
    result = _INLINE_WHITESPACE_RE.sub(" ", result)
    result = result.replace("\r\n", "\n")
    result = "\n".join(line.strip() for line in result.split("\n"))
    result = _BLANK_RUN_RE.sub("\n\n", result)
    return result.strip()


def normalize_output(output: CommandOutput) -> str:
    """Combine stdout and stderr and normalize them for comparison."""
    return strip_numbers(output.combined)


def has_error_indicators(output: CommandOutput) -> bool:
    combined = output.combined.lower()
    return any(keyword in combined for keyword in ERROR_KEYWORDS)


def build_judge_prompt(baseline: CommandOutput, current: CommandOutput) -> str:
    """Render both raw outputs and their exit codes for the judge."""
    return (
        "Baseline output:\n"
        f"stdout:\n{baseline.stdout}\n\n"
        f"stderr:\n{baseline.stderr}\n\n"
        f"exit_code: {baseline.exit_code}\n\n"
        "---\n\n"
        "Current output:\n"
        f"stdout:\n{current.stdout}\n\n"
        f"stderr:\n{current.stderr}\n\n"
        f"exit_code: {current.exit_code}"
    )


class ComparisonCache:
    """Bounded, expiring cache of equivalent comparison results.

    Entries are evicted least-recently-used once ``max_entries`` is exceeded
    and dropped on read once older than ``ttl_seconds``.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max(1, int(max_entries))
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, ComparisonResult]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> ComparisonResult | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, result = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return result

    def set(self, key: str, result: ComparisonResult) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), result)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def cache_key(workflow_id: str, baseline: CommandOutput, current: CommandOutput) -> str:
    material = f"{workflow_id}|{normalize_output(baseline)}|{normalize_output(current)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class OutputComparisonService:
    """Decide whether a verification command's current output matches its baseline.

    Parameters
    ----------
    judge:
        Callable taking ``(system_prompt, user_prompt)`` and returning a
        :class:`ComparisonResult`; raises on transport failure.
    cache:
        Cache for equivalent judgments.  A fresh bounded cache by default.
    sleep:
        Used for the retry backoff; injectable for tests.
    """

    def __init__(
        self,
        judge: EquivalenceJudge,
        cache: ComparisonCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.judge = judge
        self.cache = cache if cache is not None else ComparisonCache()
        self._sleep = sleep

    def compare_outputs(
        self,
        workflow_id: str,
        command: str,
        baseline: CommandOutput,
        current: CommandOutput,
    ) -> ComparisonResult:
        if baseline.exit_code == 0 and current.exit_code != 0 and has_error_indicators(current):
            logger.debug("Fast-path rejection for %r: baseline passed, current failed with errors", command)
            return ComparisonResult(
                are_equivalent=False,
                new_issues=(
                    f"Command '{command}' failed (exit code {current.exit_code}) when baseline succeeded",
                ),
            )

        if baseline.exit_code != current.exit_code:
            return self._judged_comparison(workflow_id, command, baseline, current)

        if baseline.exit_code == 0:
            logger.debug("Fast-path: %r exited 0 in both runs", command)
            return ComparisonResult(are_equivalent=True)

        if normalize_output(baseline) == normalize_output(current):
            logger.debug("Fast-path: %r normalized outputs are identical", command)
            return ComparisonResult(are_equivalent=True)

        return self._judged_comparison(workflow_id, command, baseline, current)

    def clear_cache(self) -> None:
        self.cache.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _judged_comparison(
        self,
        workflow_id: str,
        command: str,
        baseline: CommandOutput,
        current: CommandOutput,
    ) -> ComparisonResult:
        key = cache_key(workflow_id, baseline, current)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Using cached comparison result for %r", command)
            return cached

        result = self._ask_judge(command, baseline, current)
        if result.are_equivalent:
            self.cache.set(key, result)
        return result

    def _ask_judge(
        self,
        command: str,
        baseline: CommandOutput,
        current: CommandOutput,
    ) -> ComparisonResult:
        prompt = build_judge_prompt(baseline, current)
        for attempt in range(1, LLM_MAX_ATTEMPTS + 1):
            if attempt > 1:
                self._sleep(LLM_RETRY_BACKOFF_SECONDS)
                logger.debug("Retrying output comparison for %r", command)
            try:
                return self.judge(JUDGE_SYSTEM_PROMPT, prompt)
            except Exception as exc:
                logger.error("Output comparison failed (attempt %d): %s", attempt, exc)

        logger.warning("Output comparison unavailable for %r; treating outputs as non-equivalent", command)
        return ComparisonResult(
            are_equivalent=False,
            new_issues=(
                f"LLM comparison for command '{command}' unavailable - outputs differ and could "
                "not be verified. Review the output differences manually.",
            ),
        )
