"""Error taxonomy for the loop runner."""

from __future__ import annotations

from pathlib import Path


class ForgeError(Exception):
    """Base class for unrecoverable runner errors."""


class ConfigurationError(ForgeError):
    """Bad flag, environment or config-file combination."""


class ProcessSpawnError(ForgeError):
    """The agent binary is missing or could not be started."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"failed to start agent {command!r}: {reason}")
        self.command = command
        self.reason = reason


class RateLimitExceeded(ForgeError):
    """The hourly call budget is spent for the current window."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"hourly call limit reached; retry in {retry_after}s")
        self.retry_after = retry_after


class CircuitOpenError(ForgeError):
    """The circuit breaker is open and needs an explicit reset."""


class CorruptStateFile(ForgeError):
    """A persisted runtime file exists but cannot be decoded."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"unreadable runtime file {path}: {reason}")
        self.path = path
        self.reason = reason


class AnalysisError(ForgeError):
    """The modified-file analysis could not list files or load a saved report."""
