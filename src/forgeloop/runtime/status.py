"""Read-only status snapshots for ``forge status`` and external dashboards."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Literal

from forgeloop.errors import CorruptStateFile
from forgeloop.runtime.records import (
    CircuitBreakerState,
    ProgressRecord,
    RateLimiterRecord,
    StatusRecord,
)
from forgeloop.runtime.store import STATUS_FILE, StateStore

SnapshotState = Literal["unknown", "running", "stale", "stalled", "completed", "error"]

DEFAULT_STALL_AFTER_SECONDS = 180


@dataclass(slots=True)
class StatusSnapshot:
    state: SnapshotState
    detail: str | None = None
    status: StatusRecord | None = None
    progress: ProgressRecord | None = None
    breaker: CircuitBreakerState | None = None
    rate_limit: RateLimiterRecord | None = None
    run_elapsed_seconds: int | None = None
    iteration_elapsed_seconds: int | None = None
    seconds_since_heartbeat: int | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def read_status_snapshot(
    runtime_dir: str | Path,
    *,
    now: int,
    stall_after: int = DEFAULT_STALL_AFTER_SECONDS,
) -> StatusSnapshot:
    """Summarize the runtime directory; never raises for missing or torn files."""
    store = StateStore(runtime_dir)
    try:
        payload = store.read_json(STATUS_FILE)
        status = StatusRecord.from_dict(payload) if payload is not None else None
    except (CorruptStateFile, ValueError, TypeError, OverflowError) as exc:
        return StatusSnapshot(state="unknown", detail=str(exc))
    if status is None:
        return StatusSnapshot(state="unknown", detail="no run has been recorded")

    snapshot = StatusSnapshot(
        state="unknown",
        status=status,
        progress=store.load_progress(),
        breaker=store.load_breaker(),
        rate_limit=store.load_rate_limit(),
    )
    if status.run_status != "running":
        snapshot.state = status.run_status
        snapshot.detail = status.termination_reason
        snapshot.run_elapsed_seconds = status.run_elapsed_seconds
        snapshot.iteration_elapsed_seconds = status.iteration_elapsed_seconds
        return snapshot

    snapshot.run_elapsed_seconds = _elapsed(now, status.run_started_at)
    snapshot.iteration_elapsed_seconds = _elapsed(now, status.current_iteration_started_at)
    snapshot.seconds_since_heartbeat = _elapsed(
        now, status.last_heartbeat_at or status.current_iteration_started_at
    )

    pid = store.read_supervisor_pid() or status.supervisor_pid
    if pid is None or not pid_alive(pid):
        snapshot.state = "stale"
        snapshot.detail = "runner process is not alive"
    elif (
        snapshot.seconds_since_heartbeat is not None
        and snapshot.seconds_since_heartbeat > stall_after
    ):
        snapshot.state = "stalled"
        snapshot.detail = f"no agent output for {snapshot.seconds_since_heartbeat}s"
    else:
        snapshot.state = "running"
    return snapshot


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OSError, OverflowError):
        return False
    return True


def _elapsed(now: int, started: int | None) -> int | None:
    if not started:
        return None
    return max(0, now - started)
