"""Git helpers for workflow branches, pulse branches, worktrees, commits, and merges."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "pulseforge"
STATE_DIR = ".pulseforge"
WORKTREES_DIR = "worktrees"
RECOVERY_COMMIT_MESSAGE = "[RECOVERY] Work in progress checkpoint"

_COMMIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Pulseforge",
    "GIT_AUTHOR_EMAIL": "pulseforge@localhost",
    "GIT_COMMITTER_NAME": "Pulseforge",
    "GIT_COMMITTER_EMAIL": "pulseforge@localhost",
}


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 60,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    result = subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        env={**os.environ, **env} if env else None,
        **_git_subprocess_isolation_kwargs(),
    )
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def find_repo_root(path: str | Path) -> Path:
    """Return the top-level directory of the repository containing *path*."""
    out = _run_git("rev-parse", "--show-toplevel", cwd=Path(path)).stdout.strip()
    return Path(out)


def current_branch(repo: str | Path) -> str:
    """Return the name of the current branch."""
    return _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=Path(repo)).stdout.strip()


def current_commit(repo: str | Path) -> str:
    """Return the full SHA of HEAD."""
    return _run_git("rev-parse", "HEAD", cwd=Path(repo)).stdout.strip()


def branch_exists(repo: str | Path, branch_name: str) -> bool:
    result = _run_git(
        "show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}", cwd=Path(repo), check=False
    )
    return result.returncode == 0


def status_porcelain(repo: str | Path) -> str:
    """Return ``git status --porcelain`` output."""
    return _run_git("status", "--porcelain", cwd=Path(repo)).stdout.strip()


def has_uncommitted_changes(worktree: str | Path) -> bool:
    return status_porcelain(worktree) != ""


def workflow_branch_name(workflow_id: str) -> str:
    return f"{BRANCH_PREFIX}/{workflow_id}"


def worktrees_dir(repo_root: str | Path) -> Path:
    return Path(repo_root) / STATE_DIR / WORKTREES_DIR


def worktree_path_for(repo_root: str | Path, workflow_id: str) -> Path:
    return worktrees_dir(repo_root) / workflow_id


# ---------------------------------------------------------------------------
# Branches and worktrees
# ---------------------------------------------------------------------------


def create_workflow_branch(repo_root: str | Path, workflow_id: str, base_branch: str | None = None) -> str:
    """Create ``pulseforge/<workflow_id>`` from *base_branch* (default: HEAD).

    An existing workflow branch is reused as-is.
    """
    cwd = Path(repo_root)
    branch_name = workflow_branch_name(workflow_id)
    if branch_exists(cwd, branch_name):
        logger.warning("Workflow branch %s already exists", branch_name)
        return branch_name
    args = ["branch", branch_name]
    if base_branch:
        args.append(base_branch)
    _run_git(*args, cwd=cwd)
    logger.info("Created workflow branch %s", branch_name)
    return branch_name


def create_pulse_branch(repo_root: str | Path, workflow_branch: str, pulse_id: str) -> str:
    """Create a pulse branch off the workflow branch and return its name."""
    # A dash, not a slash: git cannot hold both ``a/b`` and ``a/b/c`` refs.
    branch_name = f"{workflow_branch}-{pulse_id}"
    _run_git("branch", branch_name, workflow_branch, cwd=Path(repo_root))
    logger.info("Created pulse branch %s", branch_name)
    return branch_name


def delete_branch(repo_root: str | Path, branch_name: str, force: bool = False) -> None:
    _run_git("branch", "-D" if force else "-d", branch_name, cwd=Path(repo_root))
    logger.info("Deleted branch %s", branch_name)


def create_worktree(repo_root: str | Path, workflow_id: str, branch_name: str) -> Path:
    """Create the workflow's worktree checked out to *branch_name*.

    An existing worktree directory is reused as-is.
    """
    path = worktree_path_for(repo_root, workflow_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        logger.warning("Worktree already exists at %s", path)
        return path
    _run_git("worktree", "add", str(path), branch_name, cwd=Path(repo_root))
    logger.info("Created worktree at %s on branch %s", path, branch_name)
    return path


def remove_worktree(repo_root: str | Path, worktree: str | Path, force: bool = False) -> None:
    args = ["worktree", "remove"]
    if force:
        args.append("--force")
    args.append(str(worktree))
    _run_git(*args, cwd=Path(repo_root))
    logger.info("Removed worktree at %s", worktree)


def prune_worktrees(repo_root: str | Path) -> None:
    _run_git("worktree", "prune", cwd=Path(repo_root))


def checkout_in_worktree(worktree: str | Path, branch_name: str) -> None:
    _run_git("checkout", branch_name, cwd=Path(worktree))
    logger.info("Checked out %s in worktree %s", branch_name, worktree)


# ---------------------------------------------------------------------------
# Commits and merges
# ---------------------------------------------------------------------------


def commit_changes(worktree: str | Path, message: str) -> str:
    """Stage everything and commit; return the resulting HEAD SHA.

    When there is nothing to commit the current HEAD is returned unchanged.
    """
    cwd = Path(worktree)
    _run_git("add", "-A", cwd=cwd)
    if not has_uncommitted_changes(cwd):
        return current_commit(cwd)
    _run_git("commit", "-m", message, cwd=cwd, env=_COMMIT_IDENTITY)
    sha = current_commit(cwd)
    logger.info("Committed changes %s - %s", sha[:8], message.splitlines()[0] if message else "")
    return sha


def create_recovery_checkpoint(worktree: str | Path) -> str | None:
    """Commit uncommitted work-in-progress; return the SHA, or ``None`` if clean."""
    if not has_uncommitted_changes(worktree):
        return None
    sha = commit_changes(worktree, RECOVERY_COMMIT_MESSAGE)
    logger.info("Created recovery checkpoint %s", sha[:8])
    return sha


def fast_forward_merge(worktree: str | Path, source_branch: str) -> None:
    _run_git("merge", "--ff-only", source_branch, cwd=Path(worktree))
    logger.info("Fast-forward merged %s", source_branch)


def merge_pulse_branch(
    repo_root: str | Path,
    worktree: str | Path,
    workflow_branch: str,
    pulse_branch: str,
) -> None:
    """Fast-forward the workflow branch to the pulse branch, then delete the pulse branch."""
    checkout_in_worktree(worktree, workflow_branch)
    fast_forward_merge(worktree, pulse_branch)
    delete_branch(repo_root, pulse_branch, force=True)
    logger.info("Merged pulse branch %s into %s", pulse_branch, workflow_branch)


def cleanup_workflow(repo_root: str | Path, workflow_id: str, *, delete_workflow_branch: bool = False) -> None:
    """Remove the workflow's worktree and optionally its branch."""
    path = worktree_path_for(repo_root, workflow_id)
    if path.exists():
        remove_worktree(repo_root, path, force=True)
    prune_worktrees(repo_root)
    branch_name = workflow_branch_name(workflow_id)
    if delete_workflow_branch and branch_exists(repo_root, branch_name):
        delete_branch(repo_root, branch_name, force=True)


class GitWorktreeClient:
    """Injectable facade over the module-level git helpers."""

    def find_repo_root(self, path: str | Path) -> Path:
        return find_repo_root(path)

    def get_current_branch(self, repo_root: str | Path) -> str:
        return current_branch(repo_root)

    def create_workflow_branch(self, repo_root: str | Path, workflow_id: str, base_branch: str | None) -> str:
        return create_workflow_branch(repo_root, workflow_id, base_branch)

    def create_worktree(self, repo_root: str | Path, workflow_id: str, branch_name: str) -> Path:
        return create_worktree(repo_root, workflow_id, branch_name)

    def create_pulse_branch(self, repo_root: str | Path, workflow_branch: str, pulse_id: str) -> str:
        return create_pulse_branch(repo_root, workflow_branch, pulse_id)

    def delete_branch(self, repo_root: str | Path, branch_name: str, force: bool = False) -> None:
        delete_branch(repo_root, branch_name, force)

    def checkout_in_worktree(self, worktree: str | Path, branch_name: str) -> None:
        checkout_in_worktree(worktree, branch_name)

    def commit_changes(self, worktree: str | Path, message: str) -> str:
        return commit_changes(worktree, message)

    def merge_pulse_branch(
        self,
        repo_root: str | Path,
        worktree: str | Path,
        workflow_branch: str,
        pulse_branch: str,
    ) -> None:
        merge_pulse_branch(repo_root, worktree, workflow_branch, pulse_branch)

    def create_recovery_checkpoint(self, worktree: str | Path) -> str | None:
        return create_recovery_checkpoint(worktree)

    def cleanup_workflow(self, repo_root: str | Path, workflow_id: str, delete_workflow_branch: bool = False) -> None:
        cleanup_workflow(repo_root, workflow_id, delete_workflow_branch=delete_workflow_branch)
