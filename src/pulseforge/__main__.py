"""CLI entrypoint for Pulseforge."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import TypeAdapter, ValidationError

from pulseforge.config import PulsingConfig
from pulseforge.git_tools import GitError, find_repo_root, worktree_path_for
from pulseforge.orchestrator import PulseOrchestrator
from pulseforge.schemas import PlannedPulse, Pulse, PulseStatus, ToolError
from pulseforge.store import PulseNotFoundError, PulseStateError
from pulseforge.tools import PulseTools, build_pulse_tools

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so settings are found regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all subcommands."""
    p = argparse.ArgumentParser(
        prog="pulseforge",
        description="Pulseforge - execute planned pulses in an isolated git worktree.",
    )
    p.add_argument("--repo", type=str, default="", help="Path inside the target git repository.")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = p.add_subparsers(dest="command")

    init_p = sub.add_parser("init", help="Create the workflow branch and worktree.")
    init_p.add_argument("workflow", help="Workflow id.")
    init_p.add_argument("--base", type=str, default=None, help="Base branch (default: current branch).")

    plan_p = sub.add_parser("plan", help="Queue pulses from a JSON plan file.")
    plan_p.add_argument("workflow", help="Workflow id.")
    plan_p.add_argument("file", help="JSON list of {id, title, description} objects.")

    start_p = sub.add_parser("start", help="Start the next proposed pulse.")
    start_p.add_argument("workflow", help="Workflow id.")

    complete_p = sub.add_parser("complete", help="Commit and merge a running pulse.")
    complete_p.add_argument("pulse", help="Pulse id.")
    complete_p.add_argument("-m", "--message", required=True, help="Conventional Commit message.")
    complete_p.add_argument(
        "--session",
        type=str,
        default="cli",
        help="Agent session whose tool calls are checked before completing (default: cli).",
    )

    fail_p = sub.add_parser("fail", help="Mark a pulse failed, checkpointing its work.")
    fail_p.add_argument("pulse", help="Pulse id.")
    fail_p.add_argument("--reason", required=True, help="Why the pulse failed.")

    stop_p = sub.add_parser("stop", help="Stop a pulse, checkpointing its work.")
    stop_p.add_argument("pulse", help="Pulse id.")

    status_p = sub.add_parser("status", help="Show the pulses of a workflow.")
    status_p.add_argument("workflow", help="Workflow id.")
    status_p.add_argument("--json", action="store_true", help="Emit machine-readable JSON.")
    return p


def _build_tools(args: argparse.Namespace) -> PulseTools:
    return build_pulse_tools(PulsingConfig.from_env(project_root=args.repo or None))


def _print_pulses(pulses: list[Pulse]) -> None:
    if not pulses:
        print("No pulses.")
        return
    for pulse in pulses:
        flag = "  [unresolved issues]" if pulse.has_unresolved_issues else ""
        print(f"  {pulse.status.value:<10} {pulse.id}  {pulse.description or ''}{flag}")
        if pulse.failure_reason:
            print(f"             reason: {pulse.failure_reason}")
        if pulse.recovery_commit_sha:
            print(f"             recovery: {pulse.recovery_commit_sha[:8]}")


def _run_init(orchestrator: PulseOrchestrator, args: argparse.Namespace) -> int:
    result = orchestrator.initialize_pulsing(args.workflow, args.base)
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    print(f"Workflow branch: {result.workflow_branch}")
    print(f"Worktree: {result.worktree_path}")
    return 0


def _run_plan(orchestrator: PulseOrchestrator, args: argparse.Namespace) -> int:
    plan_path = Path(args.file)
    try:
        planned = TypeAdapter(list[PlannedPulse]).validate_json(plan_path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        print(f"Error: could not read plan {plan_path}: {exc}", file=sys.stderr)
        return 1
    created = orchestrator.create_pulses_from_plan(args.workflow, planned)
    print(f"Queued {len(created)} pulse(s) for workflow {args.workflow}.")
    return 0


def _run_start(orchestrator: PulseOrchestrator, args: argparse.Namespace) -> int:
    worktree = worktree_path_for(find_repo_root(orchestrator.project_root), args.workflow)
    if not worktree.is_dir():
        print(f"Error: no worktree for workflow {args.workflow}; run 'init' first.", file=sys.stderr)
        return 1
    pulse = orchestrator.start_next_pulse(args.workflow, worktree)
    if pulse is None:
        print("No proposed pulses remain.")
        return 0
    print(f"Started pulse {pulse.id} on {pulse.pulse_branch}")
    return 0


def _run_complete(tools: PulseTools, args: argparse.Namespace) -> int:
    """Validate, verify, and merge a running pulse exactly as the agent tool does."""
    pulse = tools.pulses.get_pulse(args.pulse)
    if pulse is None:
        print(f"Error: pulse {args.pulse} not found", file=sys.stderr)
        return 1
    if pulse.status != PulseStatus.RUNNING:
        print(f"Error: pulse is not running (status: {pulse.status.value})", file=sys.stderr)
        return 1
    result = tools.complete_pulse(pulse.workflow_id, args.session, args.message)
    if isinstance(result, ToolError):
        print(result.render(), file=sys.stderr)
        return 1
    print(result.output)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested subcommand."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        return 1

    try:
        tools = _build_tools(args)
        orchestrator = tools.orchestrator
        if args.command == "init":
            return _run_init(orchestrator, args)
        if args.command == "plan":
            return _run_plan(orchestrator, args)
        if args.command == "start":
            return _run_start(orchestrator, args)
        if args.command == "complete":
            return _run_complete(tools, args)
        if args.command == "fail":
            orchestrator.fail_pulse(args.pulse, args.reason)
            print(f"Failed pulse {args.pulse}")
            return 0
        if args.command == "stop":
            orchestrator.stop_pulse(args.pulse)
            print(f"Stopped pulse {args.pulse}")
            return 0
        if args.command == "status":
            pulses = orchestrator.get_pulses(args.workflow)
            if args.json:
                print(json.dumps([p.model_dump(mode="json") for p in pulses], indent=2))
            else:
                _print_pulses(pulses)
            return 0
    except (GitError, PulseStateError, PulseNotFoundError, ValidationError, OSError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
