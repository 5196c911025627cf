"""Conversation history store: session turns and the tool calls made in them.

Records are appended to ``turns.jsonl`` and ``tools.jsonl``; on load the last
occurrence of an id wins, so updating a record is just appending it again.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError

from pulseforge.schemas import ConversationTurn, ToolInvocation

logger = logging.getLogger(__name__)

TURNS_FILE = "turns.jsonl"
TOOLS_FILE = "tools.jsonl"


class ConversationRepository:
    """Append-only store of turns and tool invocations, optionally file-backed."""

    def __init__(self, directory: str | Path | None = None) -> None:
        self.directory = Path(directory) if directory is not None else None
        self._turns: dict[str, ConversationTurn] = {}
        self._tools: dict[str, ToolInvocation] = {}
        self._lock = threading.RLock()
        if self.directory is not None:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._load(self.directory)

    def _load(self, directory: Path) -> None:
        for name, model, target in (
            (TURNS_FILE, ConversationTurn, self._turns),
            (TOOLS_FILE, ToolInvocation, self._tools),
        ):
            path = directory / name
            if not path.exists():
                continue
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = model.model_validate_json(line)
                    except ValidationError as exc:
                        logger.warning("Skip invalid %s line: %s", name, exc)
                        continue
                    target[record.id] = record

    def _append(self, name: str, record: ConversationTurn | ToolInvocation) -> None:
        if self.directory is None:
            return
        with open(self.directory / name, "a", encoding="utf-8") as f:
            f.write(record.model_dump_json() + "\n")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_turn(
        self,
        session_id: str,
        role: Literal["user", "assistant"],
        status: str = "completed",
    ) -> ConversationTurn:
        turn = ConversationTurn(session_id=session_id, role=role, status=status)
        with self._lock:
            self._turns[turn.id] = turn
            self._append(TURNS_FILE, turn)
        return turn

    def complete_turn(self, turn_id: str) -> None:
        with self._lock:
            turn = self._turns[turn_id].model_copy(update={"status": "completed"})
            self._turns[turn_id] = turn
            self._append(TURNS_FILE, turn)

    def record_tool(
        self,
        turn_id: str,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
        output: dict[str, Any] | None = None,
        success: bool | None = None,
    ) -> ToolInvocation:
        """Record a tool call.  ``success`` defaults to ``output["success"]``."""
        if success is None and output is not None and isinstance(output.get("success"), bool):
            success = output["success"]
        invocation = ToolInvocation(
            turn_id=turn_id,
            tool_name=tool_name,
            input_json=json.dumps(tool_input or {}),
            output_json=json.dumps(output) if output is not None else None,
            success=success,
        )
        with self._lock:
            self._tools[invocation.id] = invocation
            self._append(TOOLS_FILE, invocation)
        return invocation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_session_turns(self, session_id: str) -> list[ConversationTurn]:
        """Return the session's completed turns in the order they were created."""
        with self._lock:
            return [
                t
                for t in self._turns.values()
                if t.session_id == session_id and t.status == "completed"
            ]

    def get_tools(self, turn_id: str) -> list[ToolInvocation]:
        """Return a turn's tool invocations in call order."""
        with self._lock:
            return [t for t in self._tools.values() if t.turn_id == turn_id]
