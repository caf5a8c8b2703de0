"""Agent adapter implementations."""

from .base import AgentAdapter, AgentInvocation, AgentProcess
from .codex_adapter import CodexAdapter
from .opencode_adapter import OpenCodeAdapter

AGENT_KINDS = ("codex", "opencode")


def create_agent_adapter(agent_name: str, *, executable: str | None = None) -> AgentAdapter:
    normalized = agent_name.strip().lower()
    if normalized == "codex":
        return CodexAdapter(executable=executable)
    if normalized == "opencode":
        return OpenCodeAdapter(executable=executable)
    msg = f"Unsupported agent: {agent_name}"
    raise ValueError(msg)


__all__ = [
    "AGENT_KINDS",
    "AgentAdapter",
    "AgentInvocation",
    "AgentProcess",
    "CodexAdapter",
    "OpenCodeAdapter",
    "create_agent_adapter",
]
