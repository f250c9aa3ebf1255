#!/usr/bin/env python3
"""
Headless Swarm Launcher

Runs a swarm-orchestration task through the Claude CLI in print mode with an
MCP server descriptor, without an attached terminal. The CLI's stream-json
output is captured per session and folded into an orchestration summary
(agents spawned, tasks created, memory writes, errors).

Session files live under .swarm/sessions/<session_id>/:
- stream.jsonl  raw output stream, one JSON object per line
- errors.log    external process stderr
- summary.json  orchestration summary
- session.json  session status record
- live.log      progress log (tail -f)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("swarm")

# Script location; sibling modules are imported from here
SCRIPT_DIR = Path(__file__).parent.resolve()
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from config import (
    DEFAULT_SERVER,
    build_execution_config, load_mcp_descriptor, load_profile, load_settings,
    merge_settings, write_mcp_descriptor,
)
from detect import headless_reasons
from errors import ConfigurationError, LaunchError
from launcher import SessionRunner, run_interactive
from models import OrchestrationSummary, Session, SessionStatus
from prompts import MODES, STRATEGIES, build_swarm_prompt
from sessions import SessionTracker

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_LAUNCH = 3
EXIT_CANCELLED = 4

DEFAULT_CONFIG_FILE = "swarm.config.yaml"


def exit_code_for(session: Session) -> int:
    """Process exit code for a finished session. Only `complete` maps to 0."""
    if session.status is SessionStatus.COMPLETE:
        return EXIT_OK
    if session.error_kind == "Cancelled":
        return EXIT_CANCELLED
    return EXIT_FAILED


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "state_dir": args.state_dir,
        "command": getattr(args, "agent_command", None),
        "mcp_config": getattr(args, "mcp_config", None),
        "max_turns": getattr(args, "max_turns", None),
        "allowed_tools": getattr(args, "allowed_tools", None),
        "fallback_model": getattr(args, "fallback_model", None),
        "model": getattr(args, "model", None),
        "timeout": getattr(args, "timeout", None),
        "skip_permissions": True if getattr(args, "skip_permissions", False) else None,
        "detect_ci": False if getattr(args, "no_ci_detect", False) else None,
        "strategy": getattr(args, "strategy", None),
        "mode": getattr(args, "mode", None),
        "max_agents": getattr(args, "max_agents", None),
    }


def resolve_settings(args: argparse.Namespace) -> Dict[str, Any]:
    """Settings file, then profile, then CLI flags."""
    settings = load_settings(Path(args.config))
    overrides = _cli_overrides(args)
    if getattr(args, "profile", None):
        state_dir = Path(overrides["state_dir"] or settings["state_dir"])
        profile = load_profile(state_dir, args.profile)
        logger.info(f"Loaded profile: {args.profile}")
        settings = merge_settings(settings, profile)
    return merge_settings(settings, overrides)


def print_session(session: Session, summary: Optional[OrchestrationSummary] = None) -> None:
    print(f"Session:  {session.session_id}")
    print(f"Status:   {session.status.value}")
    if session.error_kind:
        print(f"Error:    {session.error_kind}: {session.error_message or ''}")
    if summary is not None:
        counts = summary.counts()
        print(
            f"Summary:  {counts['agents']} agents, {counts['tasks']} tasks, "
            f"{counts['memory']} memory entries, {counts['tool_calls']} tool calls, "
            f"{counts['errors']} errors"
        )
    print(f"Output:   {session.output_path}")
    print(f"Errors:   {session.error_path}")
    print(f"Report:   {session.summary_path}")


def launch_background(args: argparse.Namespace, tracker: SessionTracker) -> int:
    """Detach a child launcher for this task and return immediately."""
    session = tracker.create(args.task)
    argv = [a for a in args.argv if a != "--background"]
    cmd = [
        sys.executable, str(Path(__file__).resolve()),
        *argv, "--executor", "--session-id", session.session_id,
    ]
    launcher_log = tracker.paths_for(session.session_id)["dir"] / "launcher.log"
    try:
        with open(launcher_log, "w", encoding="utf-8") as log_file:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=log_file,
                cwd=os.getcwd(),
                start_new_session=True,
            )
    except OSError as e:
        tracker.fail(session, LaunchError.kind, f"Cannot start background launcher: {e}")
        print_session(session)
        return EXIT_LAUNCH

    logger.info(f"Background session {session.session_id} started (launcher pid {proc.pid})")
    print_session(session)
    print(f"Inspect:  {Path(__file__).name} status {session.session_id}")
    return EXIT_OK


async def cmd_run(args: argparse.Namespace) -> int:
    settings = resolve_settings(args)

    flags = {
        "executor": args.executor,
        "output_format": args.output_format,
        "background": args.background,
        "interactive": args.interactive,
    }
    reasons = headless_reasons(flags, os.environ, detect_ci=bool(settings["detect_ci"]))
    headless = bool(reasons)
    logger.info(f"Mode: {'headless (' + ', '.join(reasons) + ')' if headless else 'interactive'}")

    mcp_path = Path(settings["mcp_config"])
    servers = load_mcp_descriptor(mcp_path, settings["required_server"])
    config = build_execution_config(headless, settings, servers)

    try:
        prompt = build_swarm_prompt(
            args.task,
            strategy=settings["strategy"],
            mode=settings["mode"],
            max_agents=int(settings["max_agents"]),
            server=settings["required_server"] or servers[0].name,
        )
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    if not headless:
        return await run_interactive(config, prompt, mcp_path)

    tracker = SessionTracker(Path(settings["state_dir"]))
    if args.background:
        return launch_background(args, tracker)

    runner = SessionRunner(config, tracker, args.task, prompt, session_id=args.session_id)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runner.cancel, f"received {sig.name}")
    try:
        result = await runner.run()
    except LaunchError as e:
        logger.error(str(e))
        if runner.session is not None:
            print_session(runner.session)
        return EXIT_LAUNCH
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    if result.parse_errors:
        logger.warning(f"{len(result.parse_errors)} malformed stream line(s) skipped")
    print_session(result.session, result.summary)
    return exit_code_for(result.session)


def cmd_status(args: argparse.Namespace) -> int:
    settings = resolve_settings(args)
    tracker = SessionTracker(Path(settings["state_dir"]))
    session = tracker.get(args.session_id)
    if session is None:
        logger.error(f"Unknown session: {args.session_id}")
        return EXIT_FAILED

    summary = tracker.load_summary(session)
    if args.json:
        data = session.to_dict()
        data["counts"] = summary.counts() if summary else None
        print(json.dumps(data, indent=2))
    else:
        print_session(session, summary)
    return EXIT_OK


def cmd_sessions(args: argparse.Namespace) -> int:
    settings = resolve_settings(args)
    tracker = SessionTracker(Path(settings["state_dir"]))
    sessions = tracker.list_sessions()
    if not sessions:
        print("No sessions")
        return EXIT_OK
    for session in sessions:
        task = session.task if len(session.task) <= 50 else session.task[:47] + "..."
        print(f"{session.session_id}  {session.status.value:<8}  {session.created_at}  {task}")
    return EXIT_OK


def cmd_init(args: argparse.Namespace) -> int:
    settings = resolve_settings(args)
    mcp_path = Path(settings["mcp_config"])
    if mcp_path.exists() and not args.force:
        logger.error(f"{mcp_path} already exists (use --force to overwrite)")
        return EXIT_CONFIG
    write_mcp_descriptor(mcp_path, [DEFAULT_SERVER])
    print(f"Wrote {mcp_path} with MCP server '{DEFAULT_SERVER.name}'")
    return EXIT_OK


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Headless Swarm Launcher")
    ap.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Settings file path")
    ap.add_argument("--state-dir", help="State directory (default: .swarm)")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a swarm task")
    run.add_argument("task", help="Free-text task description")
    run.add_argument(
        "--executor", "--headless", dest="executor", action="store_true",
        help="Force headless execution",
    )
    run.add_argument(
        "--interactive", action="store_true",
        help="Prefer an interactive run even in a CI environment",
    )
    run.add_argument(
        "--output-format", choices=["stream-json"],
        help="Machine-readable output (implies headless)",
    )
    run.add_argument(
        "--background", action="store_true",
        help="Detach and return the session id immediately (implies headless)",
    )
    run.add_argument("--max-turns", type=_positive_int, help="Max agent turns (headless default: 50)")
    run.add_argument(
        "--allowed-tools", action="append", metavar="PATTERN",
        help="Allowed tool-name pattern (repeatable; default: all tools of configured servers)",
    )
    run.add_argument("--mcp-config", help="MCP server descriptor (default: .mcp.json)")
    run.add_argument("--agent-command", help="External agent command (default: claude)")
    run.add_argument("--fallback-model", help="Model to fall back to when the default is overloaded")
    run.add_argument("--model", help="Model override")
    run.add_argument("--timeout", type=_positive_float, help="Wall-clock limit in seconds")
    run.add_argument(
        "--skip-permissions", action="store_true",
        help="Pass --dangerously-skip-permissions to the agent",
    )
    run.add_argument("--no-ci-detect", action="store_true", help="Ignore CI environment variables")
    run.add_argument("--strategy", choices=STRATEGIES, help="Swarm strategy")
    run.add_argument("--mode", choices=MODES, help="Coordination mode")
    run.add_argument("--max-agents", type=_positive_int, help="Max agents to spawn")
    run.add_argument("--profile", "-p", help="Load profile from <state_dir>/profiles/")
    run.add_argument("--session-id", help=argparse.SUPPRESS)

    status = sub.add_parser("status", help="Show a session's state")
    status.add_argument("session_id", help="Session id or 'latest'")
    status.add_argument("--json", action="store_true", help="Print JSON")

    sub.add_parser("sessions", help="List sessions, newest first")

    init = sub.add_parser("init", help="Write a default MCP descriptor")
    init.add_argument("--mcp-config", help="Descriptor path (default: .mcp.json)")
    init.add_argument("--force", action="store_true", help="Overwrite an existing descriptor")

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    args.argv = list(argv) if argv is not None else sys.argv[1:]

    if args.verbose:
        logger.setLevel(logging.DEBUG)

    try:
        if args.command == "run":
            return asyncio.run(cmd_run(args))
        if args.command == "status":
            return cmd_status(args)
        if args.command == "sessions":
            return cmd_sessions(args)
        return cmd_init(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except LaunchError as e:
        logger.error(str(e))
        return EXIT_LAUNCH
    except ValueError as e:
        logger.error(str(e))
        return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
