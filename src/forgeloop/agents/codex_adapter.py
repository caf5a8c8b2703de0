"""Codex CLI adapter implementation."""

from __future__ import annotations

from forgeloop.config import ThinkingMode

from .base import AgentAdapter, AgentInvocation

FULL_ACCESS_FLAG = "--dangerously-bypass-approvals-and-sandbox"

_THINKING_CONFIG: dict[ThinkingMode, tuple[str, str, str]] = {
    "off": ("true", "false", '"none"'),
    "summary": ("false", "false", '"concise"'),
    "raw": ("false", "true", '"detailed"'),
}


def thinking_config_args(mode: ThinkingMode) -> list[str]:
    hide, show_raw, summary = _THINKING_CONFIG[mode]
    return [
        "--config",
        f"hide_agent_reasoning={hide}",
        "--config",
        f"show_raw_agent_reasoning={show_raw}",
        "--config",
        f"model_reasoning_summary={summary}",
    ]


class CodexAdapter(AgentAdapter):
    """Adapter for ``codex exec`` with JSON event output."""

    default_executable = "codex"

    @property
    def name(self) -> str:
        return "codex"

    def build_args(self, invocation: AgentInvocation) -> list[str]:
        args = [*invocation.pre_args, *thinking_config_args(invocation.thinking_mode), "exec"]
        args.extend(invocation.exec_args)
        if invocation.full_access and FULL_ACCESS_FLAG not in args:
            args.append(FULL_ACCESS_FLAG)

        session = invocation.session
        if session.mode == "explicit" and session.session_id:
            args.extend(["resume", session.session_id])
        elif session.mode == "last":
            args.extend(["resume", "--last"])
        args.append("--json")

        if invocation.prompt:
            args.append(invocation.prompt)
        return args
