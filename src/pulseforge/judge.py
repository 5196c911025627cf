"""Language-model judges deciding whether two command outputs are equivalent.

Each judge is a callable ``judge(system_prompt, user_prompt) -> ComparisonResult``
that raises on transport failure or an unusable response; retry policy lives
in :mod:`pulseforge.output_comparison`.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any

from anthropic import Anthropic
from openai import OpenAI
from pydantic import ValidationError

from pulseforge.config import PulsingConfig
from pulseforge.output_comparison import EquivalenceJudge
from pulseforge.schemas import ComparisonResult

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = float(os.getenv("PULSEFORGE_JUDGE_TIMEOUT_S", "120"))
ANTHROPIC_MAX_TOKENS = 2048


class JudgeError(RuntimeError):
    """Raised when a judge response cannot be turned into a comparison result."""


def strip_json_wrappers(text: str) -> str:
    """Remove ```json ... ``` or ~~~json ... ~~~ wrappers."""
    pattern = re.compile(r"(```|~~~)(?:json)?\s*(.*?)\1", re.DOTALL | re.IGNORECASE)
    stripped = re.sub(pattern, lambda m: m.group(2).strip(), text)
    return stripped.strip()


def parse_judgment(text: str) -> ComparisonResult:
    """Validate a judge's JSON reply."""
    payload = strip_json_wrappers(text or "")
    if not payload:
        raise JudgeError("Judge returned an empty response")
    try:
        return ComparisonResult.model_validate_json(payload)
    except ValidationError as exc:
        raise JudgeError(f"Judge returned an invalid comparison payload: {exc}") from exc


class OpenAIEquivalenceJudge:
    """Judge backed by an OpenAI chat completion in JSON mode."""

    def __init__(
        self,
        model: str,
        client: Any | None = None,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        self.model = model
        self.timeout_s = timeout_s
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = OpenAI(timeout=self.timeout_s)
        return self._client

    def __call__(self, system_prompt: str, user_prompt: str) -> ComparisonResult:
        logger.debug("Requesting equivalence judgment from openai:%s", self.model)
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
        )
        text = resp.choices[0].message.content if resp.choices else ""
        return parse_judgment(text or "")


class AnthropicEquivalenceJudge:
    """Judge backed by the Anthropic Messages API."""

    def __init__(
        self,
        model: str,
        client: Any | None = None,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        max_tokens: int = ANTHROPIC_MAX_TOKENS,
    ) -> None:
        self.model = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = Anthropic(timeout=self.timeout_s)
        return self._client

    def __call__(self, system_prompt: str, user_prompt: str) -> ComparisonResult:
        logger.debug("Requesting equivalence judgment from anthropic:%s", self.model)
        msg = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        parts = [getattr(p, "text", "") for p in (getattr(msg, "content", []) or [])]
        return parse_judgment("".join(parts))


def build_judge(config: PulsingConfig) -> EquivalenceJudge:
    """Return the judge selected by *config*."""
    model = config.resolved_judge_model
    if config.judge_provider == "anthropic":
        return AnthropicEquivalenceJudge(model)
    return OpenAIEquivalenceJudge(model)
