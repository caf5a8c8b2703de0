"""Persisted runtime records shared by the runner and its readers."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Literal, cast

RunStatus = Literal["running", "completed", "stalled", "error"]
BreakerStatus = Literal["closed", "open"]

RUN_STATUSES: set[RunStatus] = {"running", "completed", "stalled", "error"}
BREAKER_STATUSES: set[BreakerStatus] = {"closed", "open"}


@dataclass(slots=True)
class RateLimiterRecord:
    """Rolling hourly call counter."""

    call_count: int = 0
    window_started_at: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RateLimiterRecord:
        return cls(
            call_count=_to_non_negative_int(data.get("call_count")),
            window_started_at=_to_non_negative_int(data.get("window_started_at")),
        )


@dataclass(slots=True)
class CircuitBreakerState:
    """Breaker counter and status; the event history lives in its own log."""

    consecutive_no_progress: int = 0
    status: BreakerStatus = "closed"
    opened_at: int | None = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> CircuitBreakerState:
        status = data.get("status")
        return cls(
            consecutive_no_progress=_to_non_negative_int(data.get("consecutive_no_progress")),
            status=cast(BreakerStatus, status) if status in BREAKER_STATUSES else "closed",
            opened_at=_to_optional_int(data.get("opened_at")),
        )


@dataclass(slots=True)
class BreakerEvent:
    """One entry of the append-only circuit breaker history."""

    timestamp: int
    event: str
    consecutive_no_progress: int = 0
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> BreakerEvent:
        return cls(
            timestamp=_to_non_negative_int(data.get("timestamp")),
            event=str(data.get("event", "")),
            consecutive_no_progress=_to_non_negative_int(data.get("consecutive_no_progress")),
            detail=_to_optional_string(data.get("detail")),
        )


@dataclass(slots=True)
class StatusRecord:
    """Live run status polled by dashboards."""

    run_status: RunStatus = "running"
    run_started_at: int = 0
    current_iteration_started_at: int | None = None
    last_heartbeat_at: int | None = None
    supervisor_pid: int | None = None
    iteration: int = 0
    run_elapsed_seconds: int = 0
    iteration_elapsed_seconds: int = 0
    termination_reason: str | None = None
    last_error: str | None = None
    session_id: str | None = None
    agent: str | None = None
    thinking_mode: str | None = None
    updated_at: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> StatusRecord:
        run_status = data.get("run_status")
        if run_status not in RUN_STATUSES:
            msg = f"unknown run_status {run_status!r}"
            raise ValueError(msg)
        return cls(
            run_status=cast(RunStatus, run_status),
            run_started_at=_to_non_negative_int(data.get("run_started_at")),
            current_iteration_started_at=_to_optional_int(
                data.get("current_iteration_started_at")
            ),
            last_heartbeat_at=_to_optional_int(data.get("last_heartbeat_at")),
            supervisor_pid=_to_optional_int(data.get("supervisor_pid")),
            iteration=_to_non_negative_int(data.get("iteration")),
            run_elapsed_seconds=_to_non_negative_int(data.get("run_elapsed_seconds")),
            iteration_elapsed_seconds=_to_non_negative_int(data.get("iteration_elapsed_seconds")),
            termination_reason=_to_optional_string(data.get("termination_reason")),
            last_error=_to_optional_string(data.get("last_error")),
            session_id=_to_optional_string(data.get("session_id")),
            agent=_to_optional_string(data.get("agent")),
            thinking_mode=_to_optional_string(data.get("thinking_mode")),
            updated_at=_to_non_negative_int(data.get("updated_at")),
        )


@dataclass(slots=True)
class ProgressRecord:
    """Iteration counters; ``consecutive_no_progress`` mirrors the breaker."""

    iteration_count: int = 0
    last_outcome: str | None = None
    consecutive_no_progress: int = 0
    iterations_with_progress: int = 0
    iterations_without_progress: int = 0
    last_summary: str = ""
    last_output_digest: str | None = None
    updated_at: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ProgressRecord:
        return cls(
            iteration_count=_to_non_negative_int(data.get("iteration_count")),
            last_outcome=_to_optional_string(data.get("last_outcome")),
            consecutive_no_progress=_to_non_negative_int(data.get("consecutive_no_progress")),
            iterations_with_progress=_to_non_negative_int(data.get("iterations_with_progress")),
            iterations_without_progress=_to_non_negative_int(
                data.get("iterations_without_progress")
            ),
            last_summary=_to_optional_string(data.get("last_summary")) or "",
            last_output_digest=_to_optional_string(data.get("last_output_digest")),
            updated_at=_to_non_negative_int(data.get("updated_at")),
        )


@dataclass(slots=True)
class RunSession:
    """Identity of one ``run`` invocation."""

    id: str
    started_at: int
    working_directory: str
    agent_kind: str
    resumed_from: str | None = None
    outcome: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RunSession:
        session_id = _to_optional_string(data.get("id"))
        if session_id is None:
            msg = "run session is missing an id"
            raise ValueError(msg)
        return cls(
            id=session_id,
            started_at=_to_non_negative_int(data.get("started_at")),
            working_directory=str(data.get("working_directory", "")),
            agent_kind=str(data.get("agent_kind", "")),
            resumed_from=_to_optional_string(data.get("resumed_from")),
            outcome=_to_optional_string(data.get("outcome")),
        )


AnalysisMode = Literal["modified_only", "resume_latest_report"]
ANALYSIS_MODES: set[AnalysisMode] = {"modified_only", "resume_latest_report"}


@dataclass(slots=True)
class AnalysisReport:
    """Result of one modified-file analysis, persisted under ``analyze/``."""

    created_at: int = 0
    mode: AnalysisMode = "modified_only"
    files: list[str] = field(default_factory=list)
    chunk_size: int = 0
    chunk_reports: list[str] = field(default_factory=list)
    timed_out_chunks: int = 0
    failed_chunks: int = 0
    report: str = ""

    @property
    def chunks(self) -> int:
        return len(self.chunk_reports)

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["chunks"] = self.chunks
        payload["modified_files"] = len(self.files)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> AnalysisReport:
        mode = data.get("mode", "modified_only")
        if mode not in ANALYSIS_MODES:
            mode = "modified_only"
        return cls(
            created_at=_to_non_negative_int(data.get("created_at")),
            mode=cast(AnalysisMode, mode),
            files=_to_string_list(data.get("files")),
            chunk_size=_to_non_negative_int(data.get("chunk_size")),
            chunk_reports=_to_string_list(data.get("chunk_reports")),
            timed_out_chunks=_to_non_negative_int(data.get("timed_out_chunks")),
            failed_chunks=_to_non_negative_int(data.get("failed_chunks")),
            report=_to_optional_string(data.get("report")) or "",
        )


def _to_non_negative_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value >= 0 else default
    if isinstance(value, float):
        return int(value) if math.isfinite(value) and value >= 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed >= 0 else default
    return default


def _to_optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    parsed = _to_non_negative_int(value, default=-1)
    return parsed if parsed >= 0 else None


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _to_string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]
