"""Iteration loop that drives the agent until a stop condition is reached."""

from __future__ import annotations

import hashlib
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from forgeloop.agents import AgentAdapter, AgentInvocation
from forgeloop.config import RunConfig
from forgeloop.engine.analyzer import analyze_output, summarize_output
from forgeloop.engine.models import (
    Iteration,
    IterationOutcome,
    OutputAnalysis,
    RunOutcome,
    TerminationReason,
)
from forgeloop.engine.prompt import build_plan_prompt
from forgeloop.engine.session import SessionIdentity, SessionManager
from forgeloop.errors import CircuitOpenError, ForgeError, RateLimitExceeded
from forgeloop.guards.circuit_breaker import CircuitBreaker
from forgeloop.guards.rate_limiter import Denied, RateLimiter
from forgeloop.runtime.records import ProgressRecord, RunSession, RunStatus, StatusRecord
from forgeloop.runtime.store import StateStore
from forgeloop.supervisor.process import ProcessSupervisor, SupervisedRun

LOGGER = logging.getLogger(__name__)

RUN_STATUS_BY_REASON: dict[TerminationReason, RunStatus] = {
    "completed": "completed",
    "circuit_open": "stalled",
    "rate_limited": "stalled",
    "max_iterations_reached": "stalled",
    "fatal_error": "error",
    "interrupted": "error",
}


class LoopEngine:
    """Runs supervised agent iterations until completion or a guard stops the run."""

    def __init__(
        self,
        *,
        config: RunConfig,
        adapter: AgentAdapter,
        store: StateStore,
        sessions: SessionManager,
        working_directory: str | Path,
        supervisor: ProcessSupervisor | None = None,
        clock: Callable[[], float] = time.time,
        pid: int | None = None,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.store = store
        self.sessions = sessions
        self.working_directory = str(working_directory)
        self.clock = clock
        self.pid = pid if pid is not None else os.getpid()
        self.rate_limiter = RateLimiter(store, max_calls_per_hour=config.max_calls_per_hour)
        self.breaker = CircuitBreaker(store, threshold=config.no_progress_limit)
        self.supervisor = supervisor or ProcessSupervisor(
            adapter,
            store,
            watchdog_seconds=config.watchdog_seconds,
            timeout_seconds=config.timeout_minutes * 60,
            clock=clock,
        )
        self.iteration_count = 0
        self.status = StatusRecord()

    def run(self) -> RunOutcome:
        now = self._now()
        fresh = self.sessions.prepare()
        self.store.ensure()
        if fresh:
            self.breaker.reset(now, detail="fresh start")

        session = self.sessions.start_run(
            now=now, working_directory=self.working_directory, agent_kind=self.adapter.name
        )
        identity = self.sessions.resolve()
        self.iteration_count = 0
        self.status = StatusRecord(
            run_status="running",
            run_started_at=now,
            supervisor_pid=self.pid,
            session_id=identity.session_id,
            agent=self.adapter.name,
            thinking_mode=self.config.thinking_mode,
            updated_at=now,
        )
        self.store.write_supervisor_pid(self.pid)
        self.store.save_status(self.status)
        LOGGER.info(
            "run_started",
            extra={
                "run_id": session.id,
                "agent": self.adapter.name,
                "resume_mode": identity.mode,
                "fresh": fresh,
            },
        )

        try:
            outcome = self._loop(session, identity)
        except KeyboardInterrupt:
            self.supervisor.terminate_active()
            self._finish(
                session,
                RunOutcome(
                    reason="interrupted",
                    iteration_count=self.iteration_count,
                    session=session,
                    message="interrupted",
                ),
            )
            raise
        except (ForgeError, OSError) as exc:
            LOGGER.error("run_failed", extra={"error": str(exc)})
            outcome = RunOutcome(
                reason="fatal_error",
                iteration_count=self.iteration_count,
                session=session,
                message=str(exc),
            )
        self._finish(session, outcome)
        return outcome

    def _loop(self, session: RunSession, identity: SessionIdentity) -> RunOutcome:
        while True:
            now = self._now()
            if self.breaker.is_open():
                return self._circuit_open(session)

            decision = self.rate_limiter.try_acquire(now)
            if isinstance(decision, Denied):
                return RunOutcome(
                    reason="rate_limited",
                    iteration_count=self.iteration_count,
                    session=session,
                    message=str(RateLimitExceeded(decision.retry_after)),
                    retry_after=decision.retry_after,
                )

            iteration = Iteration(sequence=self.iteration_count + 1, started_at=now)
            self._begin_iteration(iteration)
            result = self.supervisor.run_iteration(
                AgentInvocation(
                    cwd=self.working_directory,
                    prompt=build_plan_prompt(self.store.runtime_dir),
                    session=identity,
                    pre_args=list(self.config.agent_pre_args),
                    exec_args=list(self.config.agent_exec_args),
                    thinking_mode=self.config.thinking_mode,
                    full_access=self.config.full_access,
                ),
                on_heartbeat=self._heartbeat,
            )
            self.iteration_count += 1

            analysis = (
                analyze_output(result.output, self.config.completion_indicators)
                if result.exit_ok
                else None
            )
            iteration.ended_at = result.ended_at
            iteration.output = result.output
            iteration.returncode = result.returncode
            iteration.timeout_kind = result.timeout_kind
            iteration.last_heartbeat_at = result.last_heartbeat_at
            iteration.outcome = _classify(result, analysis)

            if analysis is not None and analysis.session_id:
                self.sessions.remember(analysis.session_id)
                self.status.session_id = analysis.session_id
                if identity.resumable:
                    identity = SessionIdentity(mode="explicit", session_id=analysis.session_id)

            progress = self.store.load_progress()
            iteration.progressed = iteration.outcome == "completed" or _shows_progress(
                result, analysis, progress.last_output_digest
            )
            breaker_state = self.breaker.record(
                progressed=iteration.progressed, now=result.ended_at
            )
            self._save_progress(progress, iteration, result, breaker_state.consecutive_no_progress)
            LOGGER.info(
                "iteration_finished",
                extra={
                    "iteration": iteration.sequence,
                    "outcome": iteration.outcome,
                    "returncode": iteration.returncode,
                    "progressed": iteration.progressed,
                    "consecutive_no_progress": breaker_state.consecutive_no_progress,
                },
            )

            if iteration.outcome == "completed":
                return RunOutcome(
                    reason="completed", iteration_count=self.iteration_count, session=session
                )
            if self.iteration_count >= self.config.max_iterations:
                return RunOutcome(
                    reason="max_iterations_reached",
                    iteration_count=self.iteration_count,
                    session=session,
                    message=f"iteration cap of {self.config.max_iterations} reached",
                )
            if breaker_state.is_open:
                return self._circuit_open(session)

    def _begin_iteration(self, iteration: Iteration) -> None:
        self.status.iteration = iteration.sequence
        self.status.current_iteration_started_at = iteration.started_at
        self.status.last_heartbeat_at = None
        self._touch_status(iteration.started_at)
        self.store.append_live_activity(f"[forge] iteration {iteration.sequence} started")
        LOGGER.info("iteration_started", extra={"iteration": iteration.sequence})

    def _heartbeat(self, timestamp: int) -> None:
        # Heartbeats have one-second resolution; skip rewrites within the same second.
        if self.status.last_heartbeat_at == timestamp:
            return
        self.status.last_heartbeat_at = timestamp
        self._touch_status(timestamp)

    def _touch_status(self, now: int) -> None:
        self.status.run_elapsed_seconds = max(0, now - self.status.run_started_at)
        started = self.status.current_iteration_started_at
        self.status.iteration_elapsed_seconds = max(0, now - started) if started else 0
        self.status.updated_at = now
        self.store.save_status(self.status)

    def _save_progress(
        self,
        progress: ProgressRecord,
        iteration: Iteration,
        result: SupervisedRun,
        consecutive_no_progress: int,
    ) -> None:
        progress.iteration_count += 1
        progress.last_outcome = iteration.outcome
        progress.consecutive_no_progress = consecutive_no_progress
        if iteration.progressed:
            progress.iterations_with_progress += 1
        else:
            progress.iterations_without_progress += 1
        digest = _output_digest(result.output) if result.exit_ok else None
        if digest is not None:
            progress.last_output_digest = digest
        progress.last_summary = _iteration_summary(iteration, result)
        progress.updated_at = result.ended_at
        self.store.save_progress(progress)

    def _circuit_open(self, session: RunSession) -> RunOutcome:
        state = self.breaker.state()
        return RunOutcome(
            reason="circuit_open",
            iteration_count=self.iteration_count,
            session=session,
            message=str(
                CircuitOpenError(
                    f"circuit breaker open after {state.consecutive_no_progress} iterations "
                    "without progress; run `forge reset --circuit` to continue"
                )
            ),
        )

    def _finish(self, session: RunSession, outcome: RunOutcome) -> None:
        now = self._now()
        self.status.run_status = RUN_STATUS_BY_REASON[outcome.reason]
        self.status.termination_reason = outcome.reason
        if self.status.run_status == "error":
            self.status.last_error = outcome.message
        self.status.supervisor_pid = None
        self._touch_status(now)
        self.store.clear_supervisor_pid()
        self.sessions.finish(session, outcome.reason)
        self.store.append_live_activity(
            f"[forge] run finished: {outcome.reason} after {outcome.iteration_count} iteration(s)"
        )
        LOGGER.info(
            "run_finished",
            extra={
                "run_id": session.id,
                "reason": outcome.reason,
                "iterations": outcome.iteration_count,
            },
        )

    def _now(self) -> int:
        return int(self.clock())


def _classify(result: SupervisedRun, analysis: OutputAnalysis | None) -> IterationOutcome:
    if result.timed_out:
        return "watchdog_timeout"
    if result.returncode != 0 or analysis is None:
        return "process_crash"
    if analysis.verdict.completed:
        return "completed"
    return "continuing"


def _shows_progress(
    result: SupervisedRun, analysis: OutputAnalysis | None, previous_digest: str | None
) -> bool:
    if not result.exit_ok or analysis is None:
        return False
    if analysis.has_progress_hint:
        return True
    digest = _output_digest(result.output)
    return digest is not None and digest != previous_digest


def _output_digest(output: str) -> str | None:
    normalized = output.strip()
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _iteration_summary(iteration: Iteration, result: SupervisedRun) -> str:
    if result.timeout_kind == "idle":
        return f"iteration {iteration.sequence}: killed after no output for the watchdog window"
    if result.timeout_kind == "wall_clock":
        return f"iteration {iteration.sequence}: killed at the wall-clock limit"
    if iteration.outcome == "process_crash":
        return f"iteration {iteration.sequence}: agent exited with code {result.returncode}"
    return summarize_output(result.output)
