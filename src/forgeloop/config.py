"""Run configuration resolved from flags, environment, config file and defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, cast

from forgeloop.engine.analyzer import DEFAULT_COMPLETION_INDICATORS
from forgeloop.errors import ConfigurationError

ThinkingMode = Literal["off", "summary", "raw"]

THINKING_MODES: set[ThinkingMode] = {"off", "summary", "raw"}
SUPPORTED_AGENTS = ("codex", "opencode")
CONFIG_FILE_NAME = ".forgerc.json"
LOCAL_CONFIG_FILE_NAME = ".forgerc.local.json"
DEFAULT_RUNTIME_DIR = ".forge"


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class CliOverrides:
    """Values given on the command line; ``None`` means "not given"."""

    agent: str | None = None
    full_access: bool | None = None
    thinking_mode: str | None = None
    max_iterations: int | None = None
    timeout_minutes: int | None = None
    max_calls_per_hour: int | None = None
    agent_args: list[str] = field(default_factory=list)
    log_level: str | None = None


@dataclass(slots=True)
class RunConfig:
    """Settings consumed by the loop engine."""

    agent: str
    agent_cmd: str | None
    agent_pre_args: list[str]
    agent_exec_args: list[str]
    thinking_mode: ThinkingMode
    full_access: bool
    max_calls_per_hour: int
    timeout_minutes: int
    watchdog_seconds: int
    no_progress_limit: int
    max_iterations: int
    completion_indicators: list[str]
    runtime_dir: str
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, cwd: str | Path, overrides: CliOverrides | None = None) -> RunConfig:
        flags = overrides or CliOverrides()
        file_config = _load_preferred_file_config(Path(cwd))

        agent = (
            flags.agent
            or os.getenv("FORGE_AGENT")
            or _to_optional_string(file_config.get("agent"))
            or "codex"
        ).strip().lower()
        if agent not in SUPPORTED_AGENTS:
            msg = f"unsupported agent {agent!r}; expected one of {', '.join(SUPPORTED_AGENTS)}"
            raise ConfigurationError(msg)

        thinking = (
            flags.thinking_mode
            or os.getenv("FORGE_THINKING_MODE")
            or _to_optional_string(file_config.get("thinking_mode"))
            or "summary"
        ).strip().lower()
        if thinking not in THINKING_MODES:
            msg = f"unsupported thinking mode {thinking!r}; expected off, summary or raw"
            raise ConfigurationError(msg)

        max_calls_per_hour = _first_int(
            flags.max_calls_per_hour,
            os.getenv("FORGE_MAX_CALLS_PER_HOUR"),
            file_config.get("max_calls_per_hour"),
            default=100,
        )
        if max_calls_per_hour <= 0:
            msg = "max_calls_per_hour must be greater than 0"
            raise ConfigurationError(msg)

        max_iterations = _first_int(
            flags.max_iterations,
            os.getenv("FORGE_MAX_ITERATIONS"),
            file_config.get("max_iterations"),
            default=100,
        )
        if max_iterations <= 0:
            msg = "max_iterations must be greater than 0"
            raise ConfigurationError(msg)

        exec_args = _first_args(
            os.getenv("FORGE_AGENT_EXEC_ARGS"), file_config.get("agent_exec_args")
        )
        return cls(
            agent=agent,
            agent_cmd=(
                os.getenv("FORGE_AGENT_CMD") or _to_optional_string(file_config.get("agent_cmd"))
            ),
            agent_pre_args=_first_args(
                os.getenv("FORGE_AGENT_PRE_ARGS"), file_config.get("agent_pre_args")
            ),
            agent_exec_args=[*exec_args, *flags.agent_args],
            thinking_mode=cast(ThinkingMode, thinking),
            full_access=(
                flags.full_access
                if flags.full_access is not None
                else _to_bool(
                    os.getenv("FORGE_FULL_ACCESS"),
                    default=file_config.get("full_access") is True,
                )
            ),
            max_calls_per_hour=max_calls_per_hour,
            timeout_minutes=_first_int(
                flags.timeout_minutes,
                os.getenv("FORGE_TIMEOUT_MINUTES"),
                file_config.get("timeout_minutes"),
                default=15,
            ),
            watchdog_seconds=_first_int(
                os.getenv("FORGE_WATCHDOG_SECONDS"),
                file_config.get("watchdog_seconds"),
                default=120,
            ),
            no_progress_limit=max(
                1,
                _first_int(
                    os.getenv("FORGE_NO_PROGRESS_LIMIT"),
                    file_config.get("no_progress_limit"),
                    default=3,
                ),
            ),
            max_iterations=max_iterations,
            completion_indicators=_completion_indicators(file_config),
            runtime_dir=(
                os.getenv("FORGE_RUNTIME_DIR")
                or _to_optional_string(file_config.get("runtime_dir"))
                or DEFAULT_RUNTIME_DIR
            ),
            log_level=(
                flags.log_level
                or os.getenv("FORGE_LOG_LEVEL")
                or _to_optional_string(file_config.get("log_level"))
                or "WARNING"
            ).upper(),
        )

    def runtime_path(self, cwd: str | Path) -> Path:
        path = Path(self.runtime_dir)
        return path if path.is_absolute() else Path(cwd) / path


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path: Path) -> dict[str, object]:
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"invalid config file {path}: {exc}"
        raise ConfigurationError(msg) from exc
    if isinstance(parsed, dict):
        return parsed
    msg = f"config file {path} must contain a JSON object"
    raise ConfigurationError(msg)


def _load_preferred_file_config(cwd: Path) -> dict[str, object]:
    explicit_path = os.getenv("FORGE_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(Path(explicit_path))

    shared_config = _load_file_config(cwd / CONFIG_FILE_NAME)
    local_override = _load_file_config(cwd / LOCAL_CONFIG_FILE_NAME)
    return {**shared_config, **local_override}


def _first_int(*values: object, default: int) -> int:
    for value in values:
        if value is None:
            continue
        parsed = _to_non_negative_int(value)
        if parsed is not None:
            return parsed
    return default


def _to_non_negative_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return None
        return parsed if parsed >= 0 else None
    return None


def _first_args(env_value: str | None, file_value: object) -> list[str]:
    if env_value is not None and env_value.split():
        return env_value.split()
    if isinstance(file_value, list):
        return [str(item) for item in file_value]
    if isinstance(file_value, str):
        return file_value.split()
    return []


def _completion_indicators(file_config: dict[str, object]) -> list[str]:
    env_value = os.getenv("FORGE_COMPLETION_INDICATORS")
    if env_value:
        parts = [part.strip() for part in env_value.split(",") if part.strip()]
        if parts:
            return parts
    file_value = file_config.get("completion_indicators")
    if isinstance(file_value, list):
        parts = [str(item).strip() for item in file_value if str(item).strip()]
        if parts:
            return parts
    return list(DEFAULT_COMPLETION_INDICATORS)
