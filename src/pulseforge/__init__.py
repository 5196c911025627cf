"""Pulseforge - run planned pulses under an agent in an isolated git worktree."""

from importlib.metadata import PackageNotFoundError, version

from pulseforge.schemas import Pulse, PulseStatus, ToolError, ToolSuccess

__all__ = ["Pulse", "PulseStatus", "ToolError", "ToolSuccess"]

try:
    __version__ = version("pulseforge")
except PackageNotFoundError:
    __version__ = "0.0.0"
