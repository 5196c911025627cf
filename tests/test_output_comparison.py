"""Tests for output normalization, the comparison fast path, and judge fallback."""

from __future__ import annotations

import pytest

from pulseforge.output_comparison import (
    JUDGE_SYSTEM_PROMPT,
    LLM_MAX_ATTEMPTS,
    LLM_RETRY_BACKOFF_SECONDS,
    ComparisonCache,
    OutputComparisonService,
    cache_key,
    has_error_indicators,
    strip_numbers,
)
from pulseforge.schemas import CommandOutput, ComparisonResult


class _CountingJudge:
    def __init__(self, *results: ComparisonResult | Exception) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str]] = []

    def __call__(self, system_prompt: str, user_prompt: str) -> ComparisonResult:
        self.calls.append((system_prompt, user_prompt))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def _service(judge: _CountingJudge) -> tuple[OutputComparisonService, list[float]]:
    sleeps: list[float] = []
    return OutputComparisonService(judge, sleep=sleeps.append), sleeps


EQUIVALENT = ComparisonResult(are_equivalent=True)
NOT_EQUIVALENT = ComparisonResult(are_equivalent=False, new_issues=("new failure in test_b",))


# ---------------------------------------------------------------------------
# strip_numbers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "text",
    [
        "",
        "Tests: 12 passed, 1 failed in 3.42s",
        "src/app.ts(10,5): error TS2304: Cannot find name 'foo'\r\n\r\n\r\n\r\nnext",
        "  [120ms]  build   done at 12:01:59 on 2024-05-01T10:00:00.123Z  \n\n\n",
        "heap 512 MB\tused 12kb  \n   \n   \n   \n tail",
        "src/x.py:10:4 - error bad thing\n\t\n\t\n\nend",
    ],
)
def test_strip_numbers_is_idempotent(text: str) -> None:
    once = strip_numbers(text)
    assert strip_numbers(once) == once


def test_strip_numbers_replaces_timing_and_counts() -> None:
    text = "Ran 42 tests in 1.5s\n3 passed, 0 failed [15ms] 2024-01-02 10:11:12 (12,4) file.ts:3:9 64 MB"
    result = strip_numbers(text)

    assert "X tests" in result
    assert "Xs" in result
    assert "X passed" in result
    assert "X failed" in result
    assert "[Xms]" in result
    assert "DATE" in result
    assert "HH:MM:SS" in result
    assert "(X,X)" in result
    assert "file.ts:X:X" in result
    assert "XMB" in result


def test_strip_numbers_normalizes_whitespace_and_line_endings() -> None:
    assert strip_numbers("  a \t  b  \r\n\r\n\r\n\r\n  c  ") == "a b\n\nc"


def test_outputs_differing_only_in_timing_normalize_equal() -> None:
    a = CommandOutput(stdout="12 passed in 3.10s", exit_code=1)
    b = CommandOutput(stdout="12 passed in 4.87s", exit_code=1)
    assert strip_numbers(a.combined) == strip_numbers(b.combined)


def test_has_error_indicators_is_case_insensitive() -> None:
    assert has_error_indicators(CommandOutput(stderr="FATAL: Could Not open file"))
    assert not has_error_indicators(CommandOutput(stdout="all good"))


# ---------------------------------------------------------------------------
# compare_outputs fast path
# ---------------------------------------------------------------------------


def test_both_exit_zero_is_equivalent_without_judge() -> None:
    judge = _CountingJudge(NOT_EQUIVALENT)
    service, _ = _service(judge)

    result = service.compare_outputs(
        "wf",
        "npm test",
        CommandOutput(stdout="5 passed", exit_code=0),
        CommandOutput(stdout="completely different text", stderr="warning: x", exit_code=0),
    )

    assert result.are_equivalent is True
    assert judge.calls == []


def test_fast_rejection_when_baseline_passed_and_current_errors() -> None:
    judge = _CountingJudge(EQUIVALENT)
    service, _ = _service(judge)

    result = service.compare_outputs(
        "wf",
        "npm run build",
        CommandOutput(stdout="ok", exit_code=0),
        CommandOutput(stderr="Error: Cannot find module 'x'", exit_code=1),
    )

    assert result.are_equivalent is False
    assert result.new_issues == ("Command 'npm run build' failed (exit code 1) when baseline succeeded",)
    assert judge.calls == []


def test_identical_normalized_nonzero_output_is_equivalent_without_judge() -> None:
    judge = _CountingJudge(NOT_EQUIVALENT)
    service, _ = _service(judge)

    result = service.compare_outputs(
        "wf",
        "pytest",
        CommandOutput(stdout="1 failed, 9 passed in 2.01s", exit_code=1),
        CommandOutput(stdout="1 failed, 9 passed in 7.55s", exit_code=1),
    )

    assert result.are_equivalent is True
    assert judge.calls == []


def test_differing_exit_codes_without_keywords_go_to_judge() -> None:
    judge = _CountingJudge(NOT_EQUIVALENT)
    service, _ = _service(judge)

    baseline = CommandOutput(stdout="ok", exit_code=0)
    current = CommandOutput(stdout="stopped", exit_code=2)
    result = service.compare_outputs("wf", "make", baseline, current)

    assert result == NOT_EQUIVALENT
    assert len(judge.calls) == 1
    system_prompt, user_prompt = judge.calls[0]
    assert system_prompt == JUDGE_SYSTEM_PROMPT
    assert "exit_code: 0" in user_prompt
    assert "exit_code: 2" in user_prompt
    assert "stopped" in user_prompt


def test_different_nonzero_outputs_go_to_judge() -> None:
    judge = _CountingJudge(EQUIVALENT)
    service, _ = _service(judge)

    result = service.compare_outputs(
        "wf",
        "pytest",
        CommandOutput(stdout="FAILED test_a", exit_code=1),
        CommandOutput(stdout="FAILED test_a\nFAILED test_b", exit_code=1),
    )

    assert result.are_equivalent is True
    assert len(judge.calls) == 1


# ---------------------------------------------------------------------------
# Retry, fallback, and caching
# ---------------------------------------------------------------------------


def test_judge_failure_is_retried_once_with_backoff() -> None:
    judge = _CountingJudge(RuntimeError("timeout"), EQUIVALENT)
    service, sleeps = _service(judge)

    result = service.compare_outputs(
        "wf",
        "pytest",
        CommandOutput(stdout="FAILED a", exit_code=1),
        CommandOutput(stdout="FAILED b", exit_code=1),
    )

    assert result.are_equivalent is True
    assert len(judge.calls) == 2
    assert sleeps == [LLM_RETRY_BACKOFF_SECONDS]


def test_judge_unavailable_falls_back_to_non_equivalent() -> None:
    judge = _CountingJudge(RuntimeError("down"))
    service, sleeps = _service(judge)

    result = service.compare_outputs(
        "wf",
        "pytest -q",
        CommandOutput(stdout="FAILED a", exit_code=1),
        CommandOutput(stdout="FAILED b", exit_code=1),
    )

    assert result.are_equivalent is False
    assert len(result.new_issues) == 1
    assert "pytest -q" in result.new_issues[0]
    assert "unavailable" in result.new_issues[0]
    assert len(judge.calls) == LLM_MAX_ATTEMPTS
    assert len(sleeps) == LLM_MAX_ATTEMPTS - 1


def test_equivalent_judgments_are_cached() -> None:
    judge = _CountingJudge(EQUIVALENT)
    service, _ = _service(judge)
    baseline = CommandOutput(stdout="FAILED a", exit_code=1)
    current = CommandOutput(stdout="FAILED a (flaky)", exit_code=1)

    first = service.compare_outputs("wf", "pytest", baseline, current)
    second = service.compare_outputs("wf", "pytest", baseline, current)

    assert first.are_equivalent and second.are_equivalent
    assert len(judge.calls) == 1
    assert len(service.cache) == 1


def test_non_equivalent_judgments_are_not_cached() -> None:
    judge = _CountingJudge(NOT_EQUIVALENT)
    service, _ = _service(judge)
    baseline = CommandOutput(stdout="FAILED a", exit_code=1)
    current = CommandOutput(stdout="FAILED a\nFAILED b", exit_code=1)

    service.compare_outputs("wf", "pytest", baseline, current)
    service.compare_outputs("wf", "pytest", baseline, current)

    assert len(judge.calls) == 2
    assert len(service.cache) == 0


def test_clear_cache_forces_a_new_judgment() -> None:
    judge = _CountingJudge(EQUIVALENT)
    service, _ = _service(judge)
    baseline = CommandOutput(stdout="FAILED a", exit_code=1)
    current = CommandOutput(stdout="FAILED c", exit_code=1)

    service.compare_outputs("wf", "pytest", baseline, current)
    service.clear_cache()
    service.compare_outputs("wf", "pytest", baseline, current)

    assert len(judge.calls) == 2


def test_cache_key_depends_on_workflow_and_normalized_text() -> None:
    baseline = CommandOutput(stdout="done in 1.2s", exit_code=1)
    slower = CommandOutput(stdout="done in 9.9s", exit_code=1)

    assert cache_key("wf", baseline, baseline) == cache_key("wf", baseline, slower)
    assert cache_key("wf", baseline, baseline) != cache_key("other", baseline, baseline)


def test_comparison_cache_evicts_least_recently_used() -> None:
    cache = ComparisonCache(max_entries=2)
    cache.set("a", EQUIVALENT)
    cache.set("b", EQUIVALENT)
    assert cache.get("a") is not None
    cache.set("c", EQUIVALENT)

    assert cache.get("b") is None
    assert cache.get("a") is not None
    assert cache.get("c") is not None
    assert len(cache) == 2


def test_comparison_cache_expires_entries() -> None:
    now = [100.0]
    cache = ComparisonCache(ttl_seconds=10, clock=lambda: now[0])
    cache.set("k", EQUIVALENT)

    now[0] = 105.0
    assert cache.get("k") == EQUIVALENT
    now[0] = 120.0
    assert cache.get("k") is None
    assert len(cache) == 0
