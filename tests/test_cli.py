from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from forgeloop import cli
from forgeloop.engine.models import RunOutcome
from forgeloop.runtime.records import AnalysisReport, CircuitBreakerState, RunSession
from forgeloop.runtime.store import StateStore

NOW = 1_700_000_000


@pytest.fixture(autouse=True)
def _clean_forge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("FORGE_"):
            monkeypatch.delenv(key, raising=False)


def _outcome(reason: str, **kwargs: object) -> RunOutcome:
    session = RunSession(id="run-1", started_at=NOW, working_directory="/w", agent_kind="codex")
    return RunOutcome(reason=reason, iteration_count=3, session=session, **kwargs)


class FakeEngine:
    created: list[dict[str, object]] = []
    outcome: RunOutcome | BaseException

    def __init__(self, **kwargs: object) -> None:
        FakeEngine.created.append(kwargs)

    def run(self) -> RunOutcome:
        if isinstance(FakeEngine.outcome, BaseException):
            raise FakeEngine.outcome
        return FakeEngine.outcome


@pytest.fixture
def fake_engine(monkeypatch: pytest.MonkeyPatch) -> type[FakeEngine]:
    FakeEngine.created = []
    FakeEngine.outcome = _outcome("completed")
    monkeypatch.setattr(cli, "LoopEngine", FakeEngine)
    return FakeEngine


def test_parser_run_defaults() -> None:
    args = cli.build_parser().parse_args(["run"])

    assert args.command == "run"
    assert args.working_directory is None
    assert args.agent is None
    assert args.full_access is None
    assert args.resume_id is None
    assert args.resume_last is False
    assert args.fresh is False
    assert args.agent_args is None


def test_parser_accepts_run_flags() -> None:
    args = cli.build_parser().parse_args(
        [
            "--cwd",
            "./sandbox",
            "run",
            "--agent",
            "opencode",
            "--full-access",
            "--thinking",
            "raw",
            "--max-iterations",
            "5",
            "--resume-last",
            "--agent-arg=--model",
            "--agent-arg",
            "big",
        ]
    )

    assert args.working_directory == "./sandbox"
    assert args.agent == "opencode"
    assert args.full_access is True
    assert args.thinking_mode == "raw"
    assert args.max_iterations == 5
    assert args.resume_last is True
    assert args.agent_args == ["--model", "big"]


def test_parser_rejects_both_resume_flags(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["run", "--resume", "abc", "--resume-last"])
    assert "not allowed with" in capsys.readouterr().err


def test_main_rejects_invalid_cwd(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["--cwd", "./definitely-missing-dir", "status"]) == 1
    assert "Invalid working directory" in capsys.readouterr().err


@pytest.mark.parametrize(
    ("reason", "exit_code"),
    [
        ("completed", 0),
        ("fatal_error", 1),
        ("circuit_open", 2),
        ("rate_limited", 3),
        ("max_iterations_reached", 4),
    ],
)
def test_run_exit_codes(
    tmp_path: Path, fake_engine: type[FakeEngine], reason: str, exit_code: int
) -> None:
    fake_engine.outcome = _outcome(reason)

    assert cli.main(["--cwd", str(tmp_path), "run"]) == exit_code


def test_run_passes_config_to_engine(tmp_path: Path, fake_engine: type[FakeEngine]) -> None:
    cli.main(["--cwd", str(tmp_path), "run", "--agent", "opencode", "--max-iterations", "7"])

    kwargs = fake_engine.created[0]
    assert kwargs["working_directory"] == tmp_path.resolve()
    assert kwargs["adapter"].name == "opencode"
    assert kwargs["config"].max_iterations == 7
    assert kwargs["store"].runtime_dir == tmp_path.resolve() / ".forge"


def test_run_json_output(
    tmp_path: Path, fake_engine: type[FakeEngine], capsys: pytest.CaptureFixture[str]
) -> None:
    fake_engine.outcome = _outcome("rate_limited", message="limit", retry_after=120)

    assert cli.main(["--cwd", str(tmp_path), "run", "--json"]) == 3

    captured = capsys.readouterr()
    payload = json.loads(captured.out)
    assert payload["reason"] == "rate_limited"
    assert payload["exit_code"] == 3
    assert payload["retry_after"] == 120
    assert "forge: limit" in captured.err


def test_run_interrupt_exits_130(
    tmp_path: Path, fake_engine: type[FakeEngine], capsys: pytest.CaptureFixture[str]
) -> None:
    fake_engine.outcome = KeyboardInterrupt()

    assert cli.main(["--cwd", str(tmp_path), "run"]) == 130
    assert "interrupted" in capsys.readouterr().err


def test_fresh_with_resume_is_a_configuration_error(
    tmp_path: Path, fake_engine: type[FakeEngine], capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["--cwd", str(tmp_path), "run", "--fresh", "--resume", "abc"]) == 1

    assert fake_engine.created == []
    assert "--fresh cannot be combined" in capsys.readouterr().err


def test_invalid_config_reports_one_line(
    tmp_path: Path, fake_engine: type[FakeEngine], capsys: pytest.CaptureFixture[str]
) -> None:
    (tmp_path / ".forgerc.json").write_text('{"max_calls_per_hour": 0}', encoding="utf-8")

    assert cli.main(["--cwd", str(tmp_path), "run"]) == 1
    err = capsys.readouterr().err
    assert err.startswith("forge: ")
    assert len(err.strip().splitlines()) == 1


def test_status_without_runtime_state(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["--cwd", str(tmp_path), "status"]) == 0
    assert "state: unknown" in capsys.readouterr().out


def test_status_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    StateStore(tmp_path / ".forge").save_breaker(CircuitBreakerState(consecutive_no_progress=1))

    assert cli.main(["--cwd", str(tmp_path), "status", "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["state"] == "unknown"


def test_reset_circuit(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = StateStore(tmp_path / ".forge")
    store.save_breaker(CircuitBreakerState(consecutive_no_progress=3, status="open", opened_at=NOW))

    assert cli.main(["--cwd", str(tmp_path), "reset", "--circuit"]) == 0

    assert store.load_breaker().is_open is False
    assert store.read_breaker_history()[-1].detail == "manual reset"
    assert "Circuit breaker closed." in capsys.readouterr().out


def test_reset_all_keeps_plan(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".forge")
    store.save_session_id("thread-1")
    (tmp_path / ".forge" / "plan.md").write_text("- [ ] x\n", encoding="utf-8")

    assert cli.main(["--cwd", str(tmp_path), "reset", "--all"]) == 0

    assert store.load_session_id() is None
    assert (tmp_path / ".forge" / "plan.md").exists()


def test_os_error_reports_one_line(
    tmp_path: Path, fake_engine: type[FakeEngine], capsys: pytest.CaptureFixture[str]
) -> None:
    fake_engine.outcome = PermissionError("runtime directory is read-only")

    assert cli.main(["--cwd", str(tmp_path), "run"]) == 1
    assert capsys.readouterr().err.strip() == "forge: runtime directory is read-only"


class FakeAnalyzer:
    created: list[dict[str, object]] = []
    calls: list[object] = []
    report = AnalysisReport(
        created_at=NOW,
        files=["a.txt", "b.txt"],
        chunk_size=1,
        chunk_reports=["chunk-a", "chunk-b"],
        report="consolidated",
    )

    def __init__(self, **kwargs: object) -> None:
        FakeAnalyzer.created.append(kwargs)

    def analyze_modified(self, chunk_size: int) -> AnalysisReport:
        FakeAnalyzer.calls.append(chunk_size)
        return FakeAnalyzer.report

    def resume_latest(self) -> AnalysisReport:
        FakeAnalyzer.calls.append("resume")
        return FakeAnalyzer.report


@pytest.fixture
def fake_analyzer(monkeypatch: pytest.MonkeyPatch) -> type[FakeAnalyzer]:
    FakeAnalyzer.created = []
    FakeAnalyzer.calls = []
    monkeypatch.setattr(cli, "ChangeAnalyzer", FakeAnalyzer)
    return FakeAnalyzer


def test_analyze_json_summary(
    tmp_path: Path, fake_analyzer: type[FakeAnalyzer], capsys: pytest.CaptureFixture[str]
) -> None:
    argv = ["--cwd", str(tmp_path), "analyze", "--modified-only", "--chunk-size", "1", "--json"]

    assert cli.main(argv) == 0

    payload = json.loads(capsys.readouterr().out)
    assert fake_analyzer.calls == [1]
    assert payload["mode"] == "modified_only"
    assert payload["chunks"] == 2
    assert payload["chunk_reports"] == 2
    assert payload["timed_out_chunks"] == 0
    assert payload["latest_path"].endswith("latest.json")
    assert fake_analyzer.created[0]["working_directory"] == tmp_path.resolve()


def test_analyze_resume_latest_report(
    tmp_path: Path, fake_analyzer: type[FakeAnalyzer], capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["--cwd", str(tmp_path), "analyze", "--resume-latest-report"]) == 0

    assert fake_analyzer.calls == ["resume"]
    assert "consolidated" in capsys.readouterr().out


def test_analyze_resume_without_report_is_fatal(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["--cwd", str(tmp_path), "analyze", "--resume-latest-report"]) == 1
    assert "no saved analysis report" in capsys.readouterr().err


def test_analyze_rejects_zero_chunk_size(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["--cwd", str(tmp_path), "analyze", "--chunk-size", "0"]) == 1
    assert "--chunk-size must be greater than 0" in capsys.readouterr().err
