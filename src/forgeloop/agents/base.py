"""Base agent adapter primitives: argument building, spawning, termination."""

from __future__ import annotations

import abc
import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass, field
from typing import IO

from forgeloop.config import ThinkingMode
from forgeloop.engine.session import SessionIdentity
from forgeloop.errors import ProcessSpawnError

LOGGER = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 5.0

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)[\s=]+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]


@dataclass(slots=True)
class AgentInvocation:
    """Everything an adapter needs to build one agent command line."""

    cwd: str
    prompt: str | None = None
    session: SessionIdentity = field(default_factory=SessionIdentity)
    pre_args: list[str] = field(default_factory=list)
    exec_args: list[str] = field(default_factory=list)
    thinking_mode: ThinkingMode = "summary"
    full_access: bool = False


class AgentProcess:
    """Handle on a spawned agent with graceful-then-forceful termination."""

    def __init__(self, popen: subprocess.Popen[bytes], command: list[str]) -> None:
        self.popen = popen
        self.command = command

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def stdout(self) -> IO[bytes] | None:
        return self.popen.stdout

    def poll(self) -> int | None:
        return self.popen.poll()

    def wait(self, timeout: float | None = None) -> int:
        return self.popen.wait(timeout=timeout)

    def terminate(self, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> int | None:
        if self.popen.poll() is not None:
            return self.popen.returncode
        self.signal_group(force=False)
        try:
            return self.popen.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            LOGGER.warning("agent_kill_escalated", extra={"pid": self.pid, "grace": grace_seconds})
        self.signal_group(force=True)
        try:
            return self.popen.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            LOGGER.error("agent_kill_failed", extra={"pid": self.pid})
            return None

    def signal_group(self, *, force: bool) -> None:
        """Signal the process group, which outlives the leader while members remain."""
        try:
            if os.name == "nt":
                if force:
                    self.popen.kill()
                else:
                    self.popen.terminate()
                return
            # Spawned with start_new_session, so the group id equals the pid.
            sig = getattr(signal, "SIGKILL", signal.SIGTERM) if force else signal.SIGTERM
            os.killpg(self.popen.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass


class AgentAdapter(abc.ABC):
    """Abstract adapter for one kind of external coding agent."""

    default_executable: str = ""

    def __init__(self, executable: str | None = None) -> None:
        self.executable = executable or self.default_executable

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly agent name."""

    @abc.abstractmethod
    def build_args(self, invocation: AgentInvocation) -> list[str]:
        """Return the argument vector, without the executable."""

    def command(self, invocation: AgentInvocation) -> list[str]:
        return [self.executable, *self.build_args(invocation)]

    def spawn(self, invocation: AgentInvocation) -> AgentProcess:
        command = self.command(invocation)
        self.log_request(command, cwd=invocation.cwd)
        try:
            popen = subprocess.Popen(
                command,
                cwd=invocation.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=os.name != "nt",
            )
        except FileNotFoundError as exc:
            raise ProcessSpawnError(self.executable, "executable not found") from exc
        except OSError as exc:
            raise ProcessSpawnError(self.executable, str(exc)) from exc
        LOGGER.info("agent_spawned", extra={"agent": self.name, "pid": popen.pid})
        return AgentProcess(popen, command)

    def log_request(self, command: list[str], *, cwd: str) -> None:
        LOGGER.info(
            "agent_request",
            extra={
                "agent": self.name,
                "command": self._sanitize_command(" ".join(arg[:80] for arg in command)),
                "cwd": cwd,
                "argc": len(command),
            },
        )

    def _sanitize_command(self, command: str) -> str:
        sanitized = command
        for pattern in _SECRET_PATTERNS:
            sanitized = pattern.sub(r"\1***", sanitized)
        return sanitized
