"""Shared pytest configuration: markers, execution ordering, and git fixtures."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

_PULSEFORGE_ENV = (
    "PULSEFORGE_PROJECT_ROOT",
    "PULSEFORGE_STATE_DIR",
    "PULSEFORGE_VERIFICATION_TIMEOUT",
    "PULSEFORGE_PREFLIGHT_TIMEOUT",
    "PULSEFORGE_JUDGE_PROVIDER",
    "PULSEFORGE_JUDGE_MODEL",
    "PULSEFORGE_CACHE_MAX_ENTRIES",
    "PULSEFORGE_CACHE_TTL_SECONDS",
)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: git/subprocess integration tests")
    config.addinivalue_line("markers", "slow: tests that wait on real timeouts")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture(autouse=True)
def _clean_pulseforge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _PULSEFORGE_ENV:
        monkeypatch.delenv(name, raising=False)


def run_git(cwd: Path, *args: str) -> str:
    env = {
        **os.environ,
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
        env=env,
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A fresh repository on branch ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init")
    run_git(repo, "checkout", "-b", "main")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    (repo / ".gitignore").write_text(".pulseforge/\n", encoding="utf-8")
    run_git(repo, "add", "-A")
    run_git(repo, "commit", "-m", "init")
    return repo


@pytest.fixture
def git():
    """Run a git command in a directory and return its stripped stdout."""
    return run_git
