"""Data models used by the loop engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from forgeloop.runtime.records import RunSession

IterationOutcome = Literal[
    "continuing",
    "completed",
    "watchdog_timeout",
    "process_crash",
    "fatal_error",
]
TimeoutKind = Literal["idle", "wall_clock"]
TerminationReason = Literal[
    "completed",
    "fatal_error",
    "rate_limited",
    "circuit_open",
    "max_iterations_reached",
    "interrupted",
]

# Part of the CLI contract: never renumber.
EXIT_CODES: dict[TerminationReason, int] = {
    "completed": 0,
    "fatal_error": 1,
    "circuit_open": 2,
    "rate_limited": 3,
    "max_iterations_reached": 4,
    "interrupted": 130,
}


@dataclass(slots=True, frozen=True)
class CompletionVerdict:
    """Dual exit gate result for one iteration's output."""

    indicator_found: bool = False
    exit_signal: bool = False

    @property
    def completed(self) -> bool:
        return self.indicator_found and self.exit_signal


@dataclass(slots=True, frozen=True)
class OutputAnalysis:
    verdict: CompletionVerdict
    has_progress_hint: bool = False
    has_error: bool = False
    session_id: str | None = None


@dataclass(slots=True)
class Iteration:
    """One supervised invocation of the agent."""

    sequence: int
    started_at: int
    ended_at: int | None = None
    output: str = ""
    outcome: IterationOutcome = "continuing"
    last_heartbeat_at: int | None = None
    returncode: int | None = None
    timeout_kind: TimeoutKind | None = None
    progressed: bool = False


@dataclass(slots=True)
class RunOutcome:
    reason: TerminationReason
    iteration_count: int
    session: RunSession
    message: str | None = None
    retry_after: int | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.reason]
