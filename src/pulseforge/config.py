"""Runtime settings for the pulsing engine."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

JudgeProvider = Literal["openai", "anthropic"]

DEFAULT_STATE_DIR = ".pulseforge"
DEFAULT_VERIFICATION_TIMEOUT_SECONDS = 300
DEFAULT_PREFLIGHT_TIMEOUT_SECONDS = 30
DEFAULT_OPENAI_JUDGE_MODEL = "gpt-4.1-mini"
DEFAULT_ANTHROPIC_JUDGE_MODEL = "claude-3-5-haiku-latest"


class PulsingConfig(BaseModel):
    """Settings shared by the orchestrator, verifier, and CLI."""

    project_root: str = "."
    state_dir: str = DEFAULT_STATE_DIR
    verification_timeout_seconds: int = DEFAULT_VERIFICATION_TIMEOUT_SECONDS
    preflight_timeout_seconds: int = DEFAULT_PREFLIGHT_TIMEOUT_SECONDS
    judge_provider: JudgeProvider = "openai"
    judge_model: str = ""
    comparison_cache_max_entries: int = Field(default=512, ge=1)
    comparison_cache_ttl_seconds: float = Field(default=3600.0, gt=0)

    @field_validator("verification_timeout_seconds", "preflight_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        return max(1, int(value))

    @property
    def resolved_judge_model(self) -> str:
        model = self.judge_model.strip()
        if model:
            return model
        if self.judge_provider == "anthropic":
            return DEFAULT_ANTHROPIC_JUDGE_MODEL
        return DEFAULT_OPENAI_JUDGE_MODEL

    def state_path(self) -> Path:
        """Return the directory holding pulse state, worktrees, and logs."""
        return Path(self.project_root).resolve() / self.state_dir

    def logs_path(self) -> Path:
        return self.state_path() / "logs"

    @classmethod
    def from_env(cls, project_root: str | Path | None = None) -> PulsingConfig:
        """Build settings from ``PULSEFORGE_*`` environment variables."""
        values: dict[str, object] = {}
        env_map = {
            "PULSEFORGE_PROJECT_ROOT": "project_root",
            "PULSEFORGE_STATE_DIR": "state_dir",
            "PULSEFORGE_VERIFICATION_TIMEOUT": "verification_timeout_seconds",
            "PULSEFORGE_PREFLIGHT_TIMEOUT": "preflight_timeout_seconds",
            "PULSEFORGE_JUDGE_PROVIDER": "judge_provider",
            "PULSEFORGE_JUDGE_MODEL": "judge_model",
            "PULSEFORGE_CACHE_MAX_ENTRIES": "comparison_cache_max_entries",
            "PULSEFORGE_CACHE_TTL_SECONDS": "comparison_cache_ttl_seconds",
        }
        for env_name, field_name in env_map.items():
            raw = os.getenv(env_name, "").strip()
            if raw:
                values[field_name] = raw.lower() if field_name == "judge_provider" else raw
        if project_root is not None:
            values["project_root"] = str(project_root)
        return cls.model_validate(values)
