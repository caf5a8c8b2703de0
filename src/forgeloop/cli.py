"""Command-line interface for forgeloop."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import time
from pathlib import Path
from types import FrameType
from typing import cast

from .agents import AGENT_KINDS, create_agent_adapter
from .config import CliOverrides, RunConfig
from .engine.change_analysis import DEFAULT_CHUNK_SIZE, ChangeAnalyzer
from .engine.loop import LoopEngine
from .engine.models import EXIT_CODES, RunOutcome
from .engine.session import SessionManager
from .errors import ForgeError, RateLimitExceeded
from .guards.circuit_breaker import CircuitBreaker
from .runtime.records import AnalysisReport
from .runtime.status import StatusSnapshot, read_status_snapshot
from .runtime.store import ANALYSIS_LATEST_FILE, StateStore

LOGGER = logging.getLogger(__name__)


class CLIArgs(argparse.Namespace):
    working_directory: str | None
    log_level: str | None
    command: str
    agent: str | None
    full_access: bool | None
    thinking_mode: str | None
    max_iterations: int | None
    timeout_minutes: int | None
    resume_id: str | None
    resume_last: bool
    fresh: bool
    agent_args: list[str] | None
    json_output: bool
    circuit: bool
    all: bool
    modified_only: bool
    resume_latest_report: bool
    chunk_size: int


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forge", description="Autonomous loop runner for coding agents"
    )
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help="Workspace directory the agent runs in. Defaults to the current directory.",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Diagnostic log level written to stderr (default WARNING).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Iterate the agent until the plan is done")
    run_parser.add_argument("--agent", choices=AGENT_KINDS, help="Agent CLI to drive.")
    run_parser.add_argument(
        "--full-access",
        dest="full_access",
        action="store_true",
        default=None,
        help="Disable the agent's approval prompts and sandbox.",
    )
    run_parser.add_argument(
        "--thinking",
        dest="thinking_mode",
        choices=["off", "summary", "raw"],
        help="How much agent reasoning to request in the output stream.",
    )
    run_parser.add_argument(
        "--max-iterations", dest="max_iterations", type=int, help="Iteration cap for this run."
    )
    run_parser.add_argument(
        "--timeout-minutes",
        dest="timeout_minutes",
        type=int,
        help="Wall-clock limit for one iteration; 0 disables it.",
    )
    resume_group = run_parser.add_mutually_exclusive_group()
    resume_group.add_argument("--resume", dest="resume_id", help="Resume a specific agent session.")
    resume_group.add_argument(
        "--resume-last",
        dest="resume_last",
        action="store_true",
        help="Resume the most recent agent session.",
    )
    run_parser.add_argument(
        "--fresh",
        action="store_true",
        help="Discard persisted runtime state and start a new session.",
    )
    run_parser.add_argument(
        "--agent-arg",
        dest="agent_args",
        action="append",
        metavar="ARG",
        help="Extra argument passed to the agent command; repeatable.",
    )
    run_parser.add_argument(
        "--json", dest="json_output", action="store_true", help="Print the outcome as JSON."
    )

    status_parser = subparsers.add_parser("status", help="Show the state of the current run")
    status_parser.add_argument(
        "--json", dest="json_output", action="store_true", help="Print the snapshot as JSON."
    )

    analyze_parser = subparsers.add_parser(
        "analyze", help="Ask the agent for a risk review of the modified files"
    )
    analyze_scope = analyze_parser.add_mutually_exclusive_group()
    analyze_scope.add_argument(
        "--modified-only",
        dest="modified_only",
        action="store_true",
        help="Review the files reported by git diff --name-only (default).",
    )
    analyze_scope.add_argument(
        "--resume-latest-report",
        dest="resume_latest_report",
        action="store_true",
        help="Only re-run the consolidation over the saved chunk reports.",
    )
    analyze_parser.add_argument(
        "--chunk-size",
        dest="chunk_size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help=f"Files per agent call (default {DEFAULT_CHUNK_SIZE}).",
    )
    analyze_parser.add_argument("--agent", choices=AGENT_KINDS, help="Agent CLI to drive.")
    analyze_parser.add_argument(
        "--agent-arg",
        dest="agent_args",
        action="append",
        metavar="ARG",
        help="Extra argument passed to the agent command; repeatable.",
    )
    analyze_parser.add_argument(
        "--json", dest="json_output", action="store_true", help="Print the summary as JSON."
    )

    reset_parser = subparsers.add_parser("reset", help="Clear persisted guard state")
    reset_scope = reset_parser.add_mutually_exclusive_group()
    reset_scope.add_argument(
        "--circuit", action="store_true", help="Close the circuit breaker (default)."
    )
    reset_scope.add_argument(
        "--all", action="store_true", help="Remove every runtime record except plan.md."
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))

    working_directory = Path(args.working_directory or ".").expanduser().resolve()
    if not working_directory.is_dir():
        print(f"Invalid working directory: {args.working_directory}", file=sys.stderr)
        return EXIT_CODES["fatal_error"]

    try:
        if args.command == "run":
            return _run(args, working_directory)
        if args.command == "analyze":
            return _analyze(args, working_directory)
        config = RunConfig.from_env(working_directory, CliOverrides(log_level=args.log_level))
        _configure_logging(config.log_level)
        store = StateStore(config.runtime_path(working_directory))
        if args.command == "status":
            return _status(store, json_output=args.json_output)
        return _reset(store, config, reset_all=args.all)
    except (ForgeError, OSError) as exc:
        print(f"forge: {exc}", file=sys.stderr)
        return EXIT_CODES["fatal_error"]
    except KeyboardInterrupt:
        print("forge: interrupted", file=sys.stderr)
        return EXIT_CODES["interrupted"]


def _run(args: CLIArgs, working_directory: Path) -> int:
    config = RunConfig.from_env(
        working_directory,
        CliOverrides(
            agent=args.agent,
            full_access=args.full_access,
            thinking_mode=args.thinking_mode,
            max_iterations=args.max_iterations,
            timeout_minutes=args.timeout_minutes,
            agent_args=list(args.agent_args or []),
            log_level=args.log_level,
        ),
    )
    _configure_logging(config.log_level)
    store = StateStore(config.runtime_path(working_directory))
    sessions = SessionManager(
        store, resume_id=args.resume_id, resume_latest=args.resume_last, fresh=args.fresh
    )
    engine = LoopEngine(
        config=config,
        adapter=create_agent_adapter(config.agent, executable=config.agent_cmd),
        store=store,
        sessions=sessions,
        working_directory=working_directory,
    )
    LOGGER.debug("agent_selected", extra={"agent": config.agent})

    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        outcome = engine.run()
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if args.json_output:
        print(json.dumps(_outcome_payload(outcome), indent=2))
    else:
        print(_render_outcome(outcome))
    if outcome.exit_code != 0 and outcome.message:
        print(f"forge: {outcome.message}", file=sys.stderr)
    return outcome.exit_code


def _analyze(args: CLIArgs, working_directory: Path) -> int:
    config = RunConfig.from_env(
        working_directory,
        CliOverrides(
            agent=args.agent, agent_args=list(args.agent_args or []), log_level=args.log_level
        ),
    )
    _configure_logging(config.log_level)
    store = StateStore(config.runtime_path(working_directory))
    analyzer = ChangeAnalyzer(
        config=config,
        adapter=create_agent_adapter(config.agent, executable=config.agent_cmd),
        store=store,
        working_directory=working_directory,
    )

    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        if args.resume_latest_report:
            report = analyzer.resume_latest()
        else:
            report = analyzer.analyze_modified(args.chunk_size)
    except RateLimitExceeded as exc:
        print(f"forge: {exc}", file=sys.stderr)
        return EXIT_CODES["rate_limited"]
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    latest = str(store.path(ANALYSIS_LATEST_FILE)) if report.chunks else None
    if args.json_output:
        print(json.dumps(_analysis_payload(report, latest), indent=2))
    else:
        print(_render_analysis(report, latest))
    return 0


def _status(store: StateStore, *, json_output: bool) -> int:
    snapshot = read_status_snapshot(store.runtime_dir, now=int(time.time()))
    if json_output:
        print(json.dumps(snapshot.to_dict(), indent=2, sort_keys=True))
    else:
        print(_render_status(snapshot))
    return 0


def _reset(store: StateStore, config: RunConfig, *, reset_all: bool) -> int:
    if reset_all:
        removed = store.clear()
        print(f"Removed {len(removed)} runtime file(s) from {store.runtime_dir}")
        return 0
    now = int(time.time())
    CircuitBreaker(store, threshold=config.no_progress_limit).reset(now, detail="manual reset")
    print("Circuit breaker closed.")
    return 0


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )


def _raise_interrupt(signum: int, frame: FrameType | None) -> None:
    raise KeyboardInterrupt


def _outcome_payload(outcome: RunOutcome) -> dict[str, object]:
    return {
        "reason": outcome.reason,
        "exit_code": outcome.exit_code,
        "iterations": outcome.iteration_count,
        "run_id": outcome.session.id,
        "message": outcome.message,
        "retry_after": outcome.retry_after,
    }


def _render_outcome(outcome: RunOutcome) -> str:
    lines = [f"=== Run {outcome.session.id} ({outcome.reason}) ==="]
    lines.append(f"iterations: {outcome.iteration_count}")
    if outcome.retry_after is not None:
        lines.append(f"retry after: {outcome.retry_after}s")
    return "\n".join(lines)


def _analysis_payload(report: AnalysisReport, latest: str | None) -> dict[str, object]:
    return {
        "mode": report.mode,
        "modified_files": len(report.files),
        "chunks": report.chunks,
        "chunk_size": report.chunk_size,
        "chunk_reports": report.chunks,
        "timed_out_chunks": report.timed_out_chunks,
        "failed_chunks": report.failed_chunks,
        "report": report.report,
        "latest_path": latest,
    }


def _render_analysis(report: AnalysisReport, latest: str | None) -> str:
    lines = [f"=== Analysis ({report.mode}) ==="]
    lines.append(f"modified files: {len(report.files)}")
    lines.append(
        f"chunks: {report.chunks}"
        f" ({report.timed_out_chunks} timed out, {report.failed_chunks} failed)"
    )
    if latest:
        lines.append(f"saved: {latest}")
    lines.extend(["", report.report])
    return "\n".join(lines)


def _render_status(snapshot: StatusSnapshot) -> str:
    lines = [f"state: {snapshot.state}"]
    if snapshot.detail:
        lines.append(f"detail: {snapshot.detail}")
    status = snapshot.status
    if status is not None:
        lines.append(f"iteration: {status.iteration}")
        if status.agent:
            lines.append(f"agent: {status.agent}")
        if status.session_id:
            lines.append(f"session: {status.session_id}")
    if snapshot.run_elapsed_seconds is not None:
        lines.append(f"run elapsed: {snapshot.run_elapsed_seconds}s")
    if snapshot.iteration_elapsed_seconds is not None:
        lines.append(f"iteration elapsed: {snapshot.iteration_elapsed_seconds}s")
    if snapshot.breaker is not None:
        lines.append(
            f"circuit: {snapshot.breaker.status}"
            f" ({snapshot.breaker.consecutive_no_progress} without progress)"
        )
    if snapshot.rate_limit is not None:
        lines.append(f"calls this window: {snapshot.rate_limit.call_count}")
    if snapshot.progress is not None and snapshot.progress.last_summary:
        lines.append(f"last summary: {snapshot.progress.last_summary}")
    return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
