"""Spawn verification commands with a wall-clock timeout.

A timed-out command is killed together with its process group; whatever
stdout/stderr it had already produced is still collected so the failure can be
inspected afterwards via :func:`dump_timeout_log`.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import subprocess
import time
from contextlib import suppress
from pathlib import Path

from pulseforge.schemas import CommandRun

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

TIMEOUT_EXIT_CODE = -1
PARTIAL_OUTPUT_WAIT_SECONDS = 5.0


def _process_isolation_kwargs() -> dict[str, object]:
    """Return subprocess kwargs that put the child in its own process group."""
    if os.name == "nt":
        flags = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def run_command(
    command: str,
    cwd: str | Path,
    timeout_seconds: float,
    *,
    env: dict[str, str] | None = None,
) -> CommandRun:
    """Run *command* through the shell in *cwd* and capture its output.

    Raises ``OSError`` when the process cannot be spawned at all.
    """
    started = time.monotonic()
    logger.info("Running command: %s (cwd=%s, timeout=%ss)", command, cwd, timeout_seconds)
    proc = subprocess.Popen(
        command,
        cwd=str(cwd),
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        env={**os.environ, **env} if env else None,
        **_process_isolation_kwargs(),
    )
    try:
        stdout, stderr = proc.communicate(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out after %ss; killing: %s", timeout_seconds, command)
        _kill_process_tree(proc)
        stdout, stderr = _collect_partial_output(proc)
        return CommandRun(
            stdout=stdout,
            stderr=stderr,
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
            duration_seconds=time.monotonic() - started,
        )
    return CommandRun(
        stdout=stdout or "",
        stderr=stderr or "",
        exit_code=proc.returncode,
        duration_seconds=time.monotonic() - started,
    )


def _collect_partial_output(
    proc: subprocess.Popen[str],
    wait_seconds: float = PARTIAL_OUTPUT_WAIT_SECONDS,
) -> tuple[str, str]:
    """Read what the killed process buffered, giving up after *wait_seconds*."""
    try:
        stdout, stderr = proc.communicate(timeout=wait_seconds)
    except (subprocess.TimeoutExpired, ValueError, OSError):
        logger.warning("Could not recover partial output from killed process %s", proc.pid)
        return "", ""
    return stdout or "", stderr or ""


def _kill_process_tree(proc: subprocess.Popen[str]) -> None:
    """Best-effort force kill for a child process and its group."""
    if os.name != "nt":
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            with suppress(Exception):
                os.killpg(os.getpgid(pid), signal.SIGKILL)
    with suppress(Exception):
        proc.kill()


def dump_timeout_log(
    log_dir: str | Path,
    *,
    label: str,
    command: str,
    timeout_seconds: float,
    stdout: str,
    stderr: str,
) -> Path | None:
    """Write a timeout post-mortem log and return its path (``None`` on failure)."""
    now = dt.datetime.now(dt.timezone.utc)
    stamp = now.strftime("%Y%m%dT%H%M%S%f")
    target = Path(log_dir) / f"{label}_timeout_{stamp}.log"
    content = "\n".join(
        [
            f"Command: {command}",
            f"Timeout: {timeout_seconds}s",
            f"Timestamp: {now.isoformat()}",
            "",
            "--- stdout ---",
            stdout or "(empty)",
            "",
            "--- stderr ---",
            stderr or "(empty)",
        ]
    )
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to write timeout log %s: %s", target, exc)
        return None
    logger.info("Timeout log written to %s", target)
    return target
