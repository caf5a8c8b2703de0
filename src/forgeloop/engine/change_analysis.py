"""Read-only risk analysis of the workspace's modified files.

``forge analyze`` lists the files ``git diff --name-only`` reports, asks the
agent to review them in fixed-size chunks, then asks once more for a
consolidated report. Every agent call goes through the same supervisor and
hourly budget as ``forge run``. The result is written to
``analyze/latest.json`` in the runtime directory, and a later invocation can
re-run only the consolidation step from that saved report.
"""

from __future__ import annotations

import json
import logging
import subprocess
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from forgeloop.agents import AgentAdapter, AgentInvocation
from forgeloop.config import RunConfig
from forgeloop.errors import AnalysisError, ConfigurationError, RateLimitExceeded
from forgeloop.guards.rate_limiter import Denied, RateLimiter
from forgeloop.runtime.records import AnalysisReport
from forgeloop.runtime.store import ANALYSIS_LATEST_FILE, StateStore
from forgeloop.supervisor.process import ProcessSupervisor, SupervisedRun

LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 25
REPORT_FALLBACK_CHARS = 4000
SYNTHESIS_MARKER = "Consolidate the following chunk analyses"

FileLister = Callable[[Path], list[str]]


def list_modified_files(cwd: Path) -> list[str]:
    """Return the paths with unstaged changes, as ``git diff --name-only`` prints them."""
    try:
        completed = subprocess.run(
            ["git", "diff", "--name-only"],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        msg = "git executable not found"
        raise AnalysisError(msg) from exc
    if completed.returncode != 0:
        msg = f"git diff failed: {completed.stderr.strip() or completed.returncode}"
        raise AnalysisError(msg)
    return [line.strip() for line in completed.stdout.splitlines() if line.strip()]


def chunk_files(files: Sequence[str], size: int) -> list[list[str]]:
    return [list(files[index : index + size]) for index in range(0, len(files), size)]


def build_chunk_prompt(files: Sequence[str], scope_label: str) -> str:
    lines = [
        "Analyze ONLY these modified files and report exactly:",
        "1) Critical risks",
        "2) High risks",
        "3) Medium risks",
        "4) Suggested next actions",
        "Do not propose edits, only analysis.",
        "End with: EXIT_SIGNAL: true",
        "",
        f"Scope: {scope_label}",
        "",
        "Modified files:",
        *(f"- {path}" for path in files),
    ]
    return "\n".join(lines) + "\n"


def build_synthesis_prompt(chunk_reports: Sequence[str]) -> str:
    sections = [
        f"{SYNTHESIS_MARKER} into one report with the same four headings.",
        "Merge duplicates and keep the most severe rating for each risk.",
        "Do not propose edits, only analysis.",
        "End with: EXIT_SIGNAL: true",
    ]
    for index, report in enumerate(chunk_reports, start=1):
        sections.append(f"\n## Chunk {index}/{len(chunk_reports)}\n{report.strip()}")
    return "\n".join(sections) + "\n"


def extract_report(output: str) -> str:
    """Return the last agent message of a JSON event stream, else the trimmed raw output."""
    last: str | None = None
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict) or event.get("type") != "item.completed":
            continue
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            if isinstance(text, str):
                last = text
    if last is not None:
        return last
    return output.strip()[:REPORT_FALLBACK_CHARS]


class ChangeAnalyzer:
    """Runs chunked analysis prompts through the supervised agent."""

    def __init__(
        self,
        *,
        config: RunConfig,
        adapter: AgentAdapter,
        store: StateStore,
        working_directory: str | Path,
        supervisor: ProcessSupervisor | None = None,
        list_files: FileLister = list_modified_files,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.store = store
        self.working_directory = Path(working_directory)
        self.list_files = list_files
        self.clock = clock
        self.rate_limiter = RateLimiter(store, max_calls_per_hour=config.max_calls_per_hour)
        self.supervisor = supervisor or ProcessSupervisor(
            adapter,
            store,
            watchdog_seconds=config.watchdog_seconds,
            timeout_seconds=config.timeout_minutes * 60,
            clock=clock,
        )

    def analyze_modified(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AnalysisReport:
        if chunk_size <= 0:
            msg = "--chunk-size must be greater than 0"
            raise ConfigurationError(msg)
        chunks = chunk_files(self.list_files(self.working_directory), chunk_size)
        files = [path for chunk in chunks for path in chunk]
        report = AnalysisReport(
            created_at=int(self.clock()), mode="modified_only", files=files, chunk_size=chunk_size
        )
        if not files:
            report.report = "No modified files."
            LOGGER.info("analysis_skipped", extra={"reason": "no modified files"})
            return report

        self.store.ensure()
        for index, chunk in enumerate(chunks, start=1):
            scope = f"chunk {index}/{len(chunks)}"
            result = self._ask(build_chunk_prompt(chunk, scope), label=scope)
            if result.timed_out:
                report.timed_out_chunks += 1
                report.chunk_reports.append(f"[{scope} timed out: {result.timeout_kind} watchdog]")
                continue
            if result.returncode != 0:
                report.failed_chunks += 1
            report.chunk_reports.append(extract_report(result.output))

        if len(report.chunk_reports) == 1:
            report.report = report.chunk_reports[0]
        else:
            report.report = self._synthesize(report.chunk_reports)
        self._persist(report)
        return report

    def resume_latest(self) -> AnalysisReport:
        """Re-run only the consolidation step over the saved chunk reports."""
        saved = self.store.read_analysis_report()
        if saved is None:
            msg = f"no saved analysis report at {self.store.path(ANALYSIS_LATEST_FILE)}"
            raise AnalysisError(msg)
        if not saved.chunk_reports:
            msg = "saved analysis report has no chunk reports to consolidate"
            raise AnalysisError(msg)
        report = AnalysisReport(
            created_at=int(self.clock()),
            mode="resume_latest_report",
            files=list(saved.files),
            chunk_size=saved.chunk_size,
            chunk_reports=list(saved.chunk_reports),
            timed_out_chunks=saved.timed_out_chunks,
            failed_chunks=saved.failed_chunks,
        )
        report.report = self._synthesize(report.chunk_reports)
        self._persist(report)
        return report

    def _synthesize(self, chunk_reports: Sequence[str]) -> str:
        result = self._ask(build_synthesis_prompt(chunk_reports), label="synthesis")
        if result.timed_out:
            msg = f"analysis synthesis timed out ({result.timeout_kind} watchdog)"
            raise AnalysisError(msg)
        return extract_report(result.output)

    def _ask(self, prompt: str, *, label: str) -> SupervisedRun:
        decision = self.rate_limiter.try_acquire(int(self.clock()))
        if isinstance(decision, Denied):
            raise RateLimitExceeded(decision.retry_after)
        self.store.append_live_activity(f"[forge] analyze {label}")
        invocation = AgentInvocation(
            cwd=str(self.working_directory),
            prompt=prompt,
            pre_args=list(self.config.agent_pre_args),
            exec_args=list(self.config.agent_exec_args),
            thinking_mode=self.config.thinking_mode,
        )
        result = self.supervisor.run_iteration(invocation)
        LOGGER.info(
            "analysis_step_finished",
            extra={
                "step": label,
                "returncode": result.returncode,
                "timeout_kind": result.timeout_kind,
            },
        )
        return result

    def _persist(self, report: AnalysisReport) -> None:
        latest, history = self.store.save_analysis_report(report)
        LOGGER.info(
            "analysis_report_saved",
            extra={"latest": str(latest), "history": str(history), "chunks": report.chunks},
        )
