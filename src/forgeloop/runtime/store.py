"""Atomic, crash-safe persistence for the runtime directory.

The run process is the only writer. Every record is written to a temporary
file in the same directory and moved into place with ``os.replace`` so a
concurrently polling reader never observes a torn file. Unreadable records
are reported as :class:`CorruptStateFile` by the strict readers and treated
as absent by the ``load_*`` helpers.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from forgeloop.errors import CorruptStateFile
from forgeloop.runtime.records import (
    AnalysisReport,
    BreakerEvent,
    CircuitBreakerState,
    ProgressRecord,
    RateLimiterRecord,
    RunSession,
    StatusRecord,
)

LOGGER = logging.getLogger(__name__)

STATUS_FILE = "status.json"
PROGRESS_FILE = "progress.json"
RUN_SESSION_FILE = "session.json"
SESSION_ID_FILE = ".session_id"
RATE_LIMIT_FILE = "rate_limit.json"
BREAKER_STATE_FILE = ".circuit_breaker_state"
BREAKER_HISTORY_FILE = ".circuit_breaker_history"
SUPERVISOR_PID_FILE = ".runner_pid"
LIVE_LOG_FILE = "live.log"
ANALYSIS_LATEST_FILE = "analyze/latest.json"
ANALYSIS_HISTORY_DIR = "analyze/history"

RUNTIME_FILES = (
    STATUS_FILE,
    PROGRESS_FILE,
    RUN_SESSION_FILE,
    SESSION_ID_FILE,
    RATE_LIMIT_FILE,
    BREAKER_STATE_FILE,
    BREAKER_HISTORY_FILE,
    SUPERVISOR_PID_FILE,
    LIVE_LOG_FILE,
)

RecordT = TypeVar("RecordT")


class StateStore:
    """Reads and writes the runtime records of one workspace."""

    def __init__(self, runtime_dir: str | Path) -> None:
        self.runtime_dir = Path(runtime_dir)

    def path(self, name: str) -> Path:
        return self.runtime_dir / name

    def ensure(self) -> None:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)

    def read_text(self, name: str) -> str | None:
        path = self.path(name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise CorruptStateFile(path, str(exc)) from exc

    def write_text(self, name: str, content: str) -> None:
        _atomic_write_text(self.path(name), content)

    def read_json(self, name: str) -> dict[str, object] | None:
        """Return the decoded object, ``None`` when absent, or raise ``CorruptStateFile``."""
        raw = self.read_text(name)
        if raw is None:
            return None
        path = self.path(name)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptStateFile(path, str(exc)) from exc
        if not isinstance(parsed, dict):
            raise CorruptStateFile(path, "expected a JSON object")
        return parsed

    def write_json(self, name: str, payload: dict[str, object]) -> None:
        self.write_text(name, json.dumps(payload, indent=2, sort_keys=True) + "\n")

    def remove(self, name: str) -> bool:
        try:
            self.path(name).unlink()
        except FileNotFoundError:
            return False
        return True

    def clear(self) -> list[str]:
        """Delete every runtime record; inputs such as ``plan.md`` are kept."""
        removed = [name for name in RUNTIME_FILES if self.remove(name)]
        LOGGER.info("runtime_state_cleared", extra={"removed": removed})
        return removed

    def load_rate_limit(self) -> RateLimiterRecord:
        return self._load_record(RATE_LIMIT_FILE, RateLimiterRecord.from_dict, RateLimiterRecord)

    def save_rate_limit(self, record: RateLimiterRecord) -> None:
        self.write_json(RATE_LIMIT_FILE, record.to_dict())

    def load_breaker(self) -> CircuitBreakerState:
        return self._load_record(
            BREAKER_STATE_FILE, CircuitBreakerState.from_dict, CircuitBreakerState
        )

    def save_breaker(self, state: CircuitBreakerState) -> None:
        self.write_json(BREAKER_STATE_FILE, state.to_dict())

    def read_breaker_history(self) -> list[BreakerEvent]:
        try:
            raw = self.read_text(BREAKER_HISTORY_FILE)
        except CorruptStateFile as exc:
            LOGGER.warning("runtime_file_unreadable", extra={"path": str(exc.path)})
            return []
        events: list[BreakerEvent] = []
        for line in (raw or "").splitlines():
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(BreakerEvent.from_dict(parsed))
        return events

    def append_breaker_event(self, event: BreakerEvent) -> None:
        try:
            existing = self.read_text(BREAKER_HISTORY_FILE) or ""
        except CorruptStateFile:
            existing = ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        self.write_text(BREAKER_HISTORY_FILE, existing + json.dumps(event.to_dict()) + "\n")

    def load_status(self) -> StatusRecord | None:
        return self._load_record(STATUS_FILE, StatusRecord.from_dict, lambda: None)

    def save_status(self, status: StatusRecord) -> None:
        self.write_json(STATUS_FILE, status.to_dict())

    def load_progress(self) -> ProgressRecord:
        return self._load_record(PROGRESS_FILE, ProgressRecord.from_dict, ProgressRecord)

    def save_progress(self, progress: ProgressRecord) -> None:
        self.write_json(PROGRESS_FILE, progress.to_dict())

    def load_run_session(self) -> RunSession | None:
        return self._load_record(RUN_SESSION_FILE, RunSession.from_dict, lambda: None)

    def save_run_session(self, session: RunSession) -> None:
        self.write_json(RUN_SESSION_FILE, session.to_dict())

    def load_session_id(self) -> str | None:
        try:
            raw = self.read_text(SESSION_ID_FILE)
        except CorruptStateFile:
            return None
        value = (raw or "").strip()
        return value or None

    def save_session_id(self, session_id: str) -> None:
        self.write_text(SESSION_ID_FILE, session_id.strip() + "\n")

    def read_supervisor_pid(self) -> int | None:
        try:
            raw = self.read_text(SUPERVISOR_PID_FILE)
        except CorruptStateFile:
            return None
        try:
            pid = int((raw or "").strip())
        except ValueError:
            return None
        return pid if pid > 0 else None

    def write_supervisor_pid(self, pid: int) -> None:
        self.write_text(SUPERVISOR_PID_FILE, f"{pid}\n")

    def clear_supervisor_pid(self) -> None:
        self.remove(SUPERVISOR_PID_FILE)

    def save_analysis_report(self, report: AnalysisReport) -> tuple[Path, Path]:
        """Write ``analyze/latest.json`` plus a history copy named by creation time."""
        history_name = f"{ANALYSIS_HISTORY_DIR}/{report.created_at}.json"
        payload = report.to_dict()
        self.write_json(ANALYSIS_LATEST_FILE, payload)
        self.write_json(history_name, payload)
        return self.path(ANALYSIS_LATEST_FILE), self.path(history_name)

    def read_analysis_report(self) -> AnalysisReport | None:
        payload = self.read_json(ANALYSIS_LATEST_FILE)
        return AnalysisReport.from_dict(payload) if payload is not None else None

    def append_live_activity(self, text: str) -> None:
        """Append time-stamped lines to the human-readable activity log."""
        stamped = stamp_lines(text)
        if not stamped:
            return
        self.ensure()
        with self.path(LIVE_LOG_FILE).open("a", encoding="utf-8") as handle:
            handle.write(stamped)

    def _load_record(
        self,
        name: str,
        parse: Callable[[dict[str, object]], RecordT],
        default: Callable[[], RecordT],
    ) -> RecordT:
        try:
            payload = self.read_json(name)
            if payload is None:
                return default()
            return parse(payload)
        except CorruptStateFile as exc:
            LOGGER.warning(
                "runtime_file_unreadable",
                extra={"path": str(exc.path), "reason": exc.reason},
            )
        except (ValueError, TypeError, OverflowError) as exc:
            LOGGER.warning(
                "runtime_file_unreadable",
                extra={"path": str(self.path(name)), "reason": str(exc)},
            )
        return default()


def stamp_lines(text: str, *, now: datetime | None = None) -> str:
    """Prefix every non-empty line with a ``[HH:MM:SS]`` stamp."""
    stamp = (now or datetime.now()).strftime("%H:%M:%S")
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return ""
    return "".join(f"[{stamp}] {line}\n" for line in lines)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
