import json
import os

import pytest

from forgeloop.config import CliOverrides, RunConfig
from forgeloop.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _clean_forge_env(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("FORGE_"):
            monkeypatch.delenv(key, raising=False)


def test_defaults_without_config(tmp_path) -> None:
    config = RunConfig.from_env(tmp_path)

    assert config.agent == "codex"
    assert config.thinking_mode == "summary"
    assert config.full_access is False
    assert config.max_calls_per_hour == 100
    assert config.timeout_minutes == 15
    assert config.watchdog_seconds == 120
    assert config.no_progress_limit == 3
    assert config.max_iterations == 100
    assert config.runtime_dir == ".forge"
    assert config.log_level == "WARNING"
    assert "STATUS: COMPLETE" in config.completion_indicators


def test_file_config_is_loaded_from_workspace(tmp_path) -> None:
    (tmp_path / ".forgerc.json").write_text(
        json.dumps(
            {
                "agent": "opencode",
                "thinking_mode": "raw",
                "max_calls_per_hour": 40,
                "agent_exec_args": ["--model", "big"],
                "completion_indicators": ["DONE_DONE"],
                "full_access": True,
            }
        ),
        encoding="utf-8",
    )

    config = RunConfig.from_env(tmp_path)

    assert config.agent == "opencode"
    assert config.thinking_mode == "raw"
    assert config.max_calls_per_hour == 40
    assert config.agent_exec_args == ["--model", "big"]
    assert config.completion_indicators == ["DONE_DONE"]
    assert config.full_access is True


def test_local_config_overrides_shared_file(tmp_path) -> None:
    (tmp_path / ".forgerc.json").write_text(
        json.dumps({"agent": "opencode", "max_iterations": 7}), encoding="utf-8"
    )
    (tmp_path / ".forgerc.local.json").write_text(
        json.dumps({"max_iterations": 9}), encoding="utf-8"
    )

    config = RunConfig.from_env(tmp_path)

    assert config.agent == "opencode"
    assert config.max_iterations == 9


def test_env_overrides_file_and_flags_override_env(tmp_path, monkeypatch) -> None:
    (tmp_path / ".forgerc.json").write_text(
        json.dumps({"thinking_mode": "raw", "timeout_minutes": 30}), encoding="utf-8"
    )
    monkeypatch.setenv("FORGE_THINKING_MODE", "off")
    monkeypatch.setenv("FORGE_TIMEOUT_MINUTES", "20")

    from_env = RunConfig.from_env(tmp_path)
    assert from_env.thinking_mode == "off"
    assert from_env.timeout_minutes == 20

    flagged = RunConfig.from_env(
        tmp_path, CliOverrides(thinking_mode="summary", timeout_minutes=5)
    )
    assert flagged.thinking_mode == "summary"
    assert flagged.timeout_minutes == 5


def test_explicit_config_file_env(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "elsewhere.json"
    config_path.write_text(json.dumps({"watchdog_seconds": 45}), encoding="utf-8")
    (tmp_path / ".forgerc.json").write_text(
        json.dumps({"watchdog_seconds": 999}), encoding="utf-8"
    )
    monkeypatch.setenv("FORGE_CONFIG_FILE", str(config_path))

    config = RunConfig.from_env(tmp_path)

    assert config.watchdog_seconds == 45


def test_agent_args_from_env_and_flags_are_combined(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FORGE_AGENT_PRE_ARGS", "--profile work")
    monkeypatch.setenv("FORGE_AGENT_EXEC_ARGS", "--model small")

    config = RunConfig.from_env(tmp_path, CliOverrides(agent_args=["--skip-git-repo-check"]))

    assert config.agent_pre_args == ["--profile", "work"]
    assert config.agent_exec_args == ["--model", "small", "--skip-git-repo-check"]


def test_full_access_env_and_flag(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FORGE_FULL_ACCESS", "yes")
    assert RunConfig.from_env(tmp_path).full_access is True
    assert RunConfig.from_env(tmp_path, CliOverrides(full_access=False)).full_access is False


def test_completion_indicators_from_env(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FORGE_COMPLETION_INDICATORS", "ALPHA, BETA ,")

    config = RunConfig.from_env(tmp_path)

    assert config.completion_indicators == ["ALPHA", "BETA"]


def test_zero_rate_limit_is_rejected(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FORGE_MAX_CALLS_PER_HOUR", "0")

    with pytest.raises(ConfigurationError, match="max_calls_per_hour"):
        RunConfig.from_env(tmp_path)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        (CliOverrides(agent="aider"), "unsupported agent"),
        (CliOverrides(thinking_mode="loud"), "unsupported thinking mode"),
        (CliOverrides(max_iterations=0), "max_iterations"),
    ],
)
def test_invalid_overrides_are_rejected(tmp_path, overrides, message) -> None:
    with pytest.raises(ConfigurationError, match=message):
        RunConfig.from_env(tmp_path, overrides)


def test_malformed_config_file_is_a_configuration_error(tmp_path) -> None:
    (tmp_path / ".forgerc.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="invalid config file"):
        RunConfig.from_env(tmp_path)


def test_no_progress_limit_has_a_floor_of_one(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FORGE_NO_PROGRESS_LIMIT", "0")

    assert RunConfig.from_env(tmp_path).no_progress_limit == 1


def test_runtime_path_resolves_relative_to_workspace(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FORGE_RUNTIME_DIR", "state")

    config = RunConfig.from_env(tmp_path)

    assert config.runtime_path(tmp_path) == tmp_path / "state"
