"""OpenCode CLI adapter implementation."""

from __future__ import annotations

import logging

from .base import AgentAdapter, AgentInvocation

LOGGER = logging.getLogger(__name__)


class OpenCodeAdapter(AgentAdapter):
    """Adapter for ``opencode run``."""

    default_executable = "opencode"

    @property
    def name(self) -> str:
        return "opencode"

    def build_args(self, invocation: AgentInvocation) -> list[str]:
        args = [*invocation.pre_args, "run", *invocation.exec_args, "--json"]
        if invocation.thinking_mode == "off":
            args.extend(["--config", "hide_agent_reasoning=true"])
        if invocation.full_access:
            # opencode has no sandbox switch; permissions come from its own config.
            LOGGER.debug("full_access_ignored", extra={"agent": self.name})

        session = invocation.session
        if session.mode == "explicit" and session.session_id:
            args.extend(["--session", session.session_id])
        elif session.mode == "last":
            args.append("--continue")

        if invocation.prompt:
            args.extend(["--prompt", invocation.prompt])
        return args
