from __future__ import annotations

import json
import os
from datetime import datetime

import pytest

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
from forgeloop.runtime.status import read_status_snapshot
from forgeloop.runtime.store import (
    ANALYSIS_LATEST_FILE,
    BREAKER_HISTORY_FILE,
    BREAKER_STATE_FILE,
    LIVE_LOG_FILE,
    PROGRESS_FILE,
    RATE_LIMIT_FILE,
    STATUS_FILE,
    StateStore,
    stamp_lines,
)

NOW = 1_700_000_000


def test_records_round_trip_through_disk(tmp_path) -> None:
    store = StateStore(tmp_path / ".forge")
    store.save_rate_limit(RateLimiterRecord(call_count=4, window_started_at=NOW))
    store.save_breaker(CircuitBreakerState(consecutive_no_progress=2))
    store.save_progress(ProgressRecord(iteration_count=3, last_summary="did things"))
    store.save_run_session(
        RunSession(id="abc", started_at=NOW, working_directory="/w", agent_kind="codex")
    )
    store.save_session_id("thread-1")

    assert store.load_rate_limit() == RateLimiterRecord(call_count=4, window_started_at=NOW)
    assert store.load_breaker().consecutive_no_progress == 2
    assert store.load_progress().last_summary == "did things"
    assert store.load_run_session().agent_kind == "codex"
    assert store.load_session_id() == "thread-1"


def test_write_leaves_no_temporary_files(tmp_path) -> None:
    store = StateStore(tmp_path)
    store.save_status(StatusRecord(run_started_at=NOW))
    store.save_status(StatusRecord(run_started_at=NOW, iteration=2))

    assert sorted(os.listdir(tmp_path)) == [STATUS_FILE]
    payload = json.loads((tmp_path / STATUS_FILE).read_text(encoding="utf-8"))
    assert payload["iteration"] == 2


def test_missing_records_load_defaults(tmp_path) -> None:
    store = StateStore(tmp_path / "absent")

    assert store.load_rate_limit() == RateLimiterRecord()
    assert store.load_breaker() == CircuitBreakerState()
    assert store.load_progress() == ProgressRecord()
    assert store.load_status() is None
    assert store.load_run_session() is None
    assert store.load_session_id() is None
    assert store.read_supervisor_pid() is None


def test_corrupt_records_are_treated_as_absent(tmp_path) -> None:
    store = StateStore(tmp_path)
    (tmp_path / RATE_LIMIT_FILE).write_text('{"call_count": 9', encoding="utf-8")
    (tmp_path / BREAKER_STATE_FILE).write_text("[]", encoding="utf-8")
    (tmp_path / STATUS_FILE).write_text('{"run_status": "exploded"}', encoding="utf-8")

    assert store.load_rate_limit() == RateLimiterRecord()
    assert store.load_breaker() == CircuitBreakerState()
    assert store.load_status() is None


def test_non_finite_numbers_load_as_defaults(tmp_path) -> None:
    store = StateStore(tmp_path)
    (tmp_path / RATE_LIMIT_FILE).write_text(
        '{"call_count": 1e999, "window_started_at": 5}', encoding="utf-8"
    )
    (tmp_path / PROGRESS_FILE).write_text('{"iteration_count": -1e999}', encoding="utf-8")

    assert store.load_rate_limit() == RateLimiterRecord(call_count=0, window_started_at=5)
    assert store.load_progress().iteration_count == 0


def test_strict_reader_reports_corrupt_file(tmp_path) -> None:
    (tmp_path / PROGRESS_FILE).write_text("not json", encoding="utf-8")

    with pytest.raises(CorruptStateFile):
        StateStore(tmp_path).read_json(PROGRESS_FILE)


def test_breaker_history_appends_and_skips_torn_lines(tmp_path) -> None:
    store = StateStore(tmp_path)
    store.append_breaker_event(BreakerEvent(timestamp=NOW, event="trip", consecutive_no_progress=3))
    with (tmp_path / BREAKER_HISTORY_FILE).open("a", encoding="utf-8") as handle:
        handle.write('{"timestamp": 1, "ev')
    store.append_breaker_event(BreakerEvent(timestamp=NOW + 5, event="reset"))

    events = store.read_breaker_history()

    assert [event.event for event in events] == ["trip", "reset"]


def test_clear_keeps_plan_file(tmp_path) -> None:
    store = StateStore(tmp_path)
    (tmp_path / "plan.md").write_text("- [ ] task\n", encoding="utf-8")
    store.save_progress(ProgressRecord(iteration_count=1))
    store.write_supervisor_pid(1234)

    removed = store.clear()

    assert set(removed) == {PROGRESS_FILE, ".runner_pid"}
    assert (tmp_path / "plan.md").exists()


def test_analysis_report_is_saved_with_history(tmp_path) -> None:
    store = StateStore(tmp_path)
    report = AnalysisReport(created_at=NOW, files=["a.py"], chunk_size=5, chunk_reports=["ok"])

    latest, history = store.save_analysis_report(report)

    assert latest == tmp_path / ANALYSIS_LATEST_FILE
    assert history.name == f"{NOW}.json"
    assert store.read_analysis_report() == report


def test_analysis_report_fields_are_coerced(tmp_path) -> None:
    (tmp_path / "analyze").mkdir()
    (tmp_path / ANALYSIS_LATEST_FILE).write_text(
        '{"mode": "bogus", "files": ["a", 3], "chunk_reports": "x", "failed_chunks": -2}',
        encoding="utf-8",
    )

    report = StateStore(tmp_path).read_analysis_report()

    assert report == AnalysisReport(mode="modified_only", files=["a"])


def test_live_activity_lines_are_stamped(tmp_path) -> None:
    store = StateStore(tmp_path)
    store.append_live_activity("first\n\nsecond\n")
    store.append_live_activity("   ")

    lines = (tmp_path / LIVE_LOG_FILE).read_text(encoding="utf-8").splitlines()

    assert len(lines) == 2
    assert lines[0].endswith("] first")
    assert stamp_lines("x", now=datetime(2024, 1, 1, 9, 5, 7)) == "[09:05:07] x\n"


def test_status_snapshot_unknown_without_files(tmp_path) -> None:
    snapshot = read_status_snapshot(tmp_path / "nothing", now=NOW)

    assert snapshot.state == "unknown"
    assert snapshot.status is None


def test_status_snapshot_unknown_for_truncated_file(tmp_path) -> None:
    (tmp_path / STATUS_FILE).write_text('{"run_status": "runn', encoding="utf-8")

    snapshot = read_status_snapshot(tmp_path, now=NOW)

    assert snapshot.state == "unknown"
    assert snapshot.detail


def test_status_snapshot_tolerates_non_finite_timestamps(tmp_path) -> None:
    (tmp_path / STATUS_FILE).write_text(
        '{"run_status": "running", "run_started_at": 1e999}', encoding="utf-8"
    )
    (tmp_path / RATE_LIMIT_FILE).write_text('{"call_count": 1e999}', encoding="utf-8")

    snapshot = read_status_snapshot(tmp_path, now=NOW)

    assert snapshot.state == "stale"
    assert snapshot.run_elapsed_seconds is None
    assert snapshot.rate_limit == RateLimiterRecord()


def test_status_snapshot_tolerates_oversized_pid(tmp_path) -> None:
    store = StateStore(tmp_path)
    store.save_status(StatusRecord(run_started_at=NOW - 5))
    (tmp_path / ".runner_pid").write_text("99999999999999999999999\n", encoding="utf-8")

    snapshot = read_status_snapshot(tmp_path, now=NOW)

    assert snapshot.state == "stale"


def test_status_snapshot_stale_when_runner_is_gone(tmp_path, monkeypatch) -> None:
    store = StateStore(tmp_path)
    store.save_status(StatusRecord(run_started_at=NOW - 100, supervisor_pid=999_999))
    monkeypatch.setattr("forgeloop.runtime.status.pid_alive", lambda _pid: False)

    snapshot = read_status_snapshot(tmp_path, now=NOW)

    assert snapshot.state == "stale"
    assert snapshot.run_elapsed_seconds == 100


def test_status_snapshot_running_and_stalled(tmp_path) -> None:
    store = StateStore(tmp_path)
    store.write_supervisor_pid(os.getpid())
    store.save_status(
        StatusRecord(
            run_started_at=NOW - 600,
            current_iteration_started_at=NOW - 300,
            last_heartbeat_at=NOW - 10,
            iteration=2,
        )
    )

    running = read_status_snapshot(tmp_path, now=NOW, stall_after=60)
    assert running.state == "running"
    assert running.iteration_elapsed_seconds == 300
    assert running.seconds_since_heartbeat == 10

    stalled = read_status_snapshot(tmp_path, now=NOW + 120, stall_after=60)
    assert stalled.state == "stalled"


def test_status_snapshot_reports_finished_runs(tmp_path) -> None:
    StateStore(tmp_path).save_status(
        StatusRecord(run_status="completed", run_started_at=NOW, termination_reason="completed")
    )

    snapshot = read_status_snapshot(tmp_path, now=NOW + 5)

    assert snapshot.state == "completed"
    assert snapshot.detail == "completed"
