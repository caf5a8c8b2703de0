"""Supervision of one agent iteration: streaming, heartbeats and watchdogs.

The control thread waits on a single queue fed by two producers: the stream
reader thread (output chunks and end of stream) and the idle watchdog timer
(expiry). A bounded ``get`` lets the same loop observe process exit and the
wall-clock deadline, so every poll has exactly one winner.

An agent can exit while a background child it started still holds the
inherited output pipe. Exit then wins after a short drain window, and the
rest of the process group is signalled so the reader sees end of stream.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import IO, Literal

from forgeloop.agents import AgentAdapter, AgentInvocation, AgentProcess
from forgeloop.agents.base import DEFAULT_GRACE_SECONDS
from forgeloop.engine.models import TimeoutKind
from forgeloop.runtime.store import StateStore

LOGGER = logging.getLogger(__name__)

DEFAULT_WATCHDOG_SECONDS = 120.0
DEFAULT_TIMEOUT_SECONDS = 15 * 60.0
DEFAULT_POLL_INTERVAL = 0.2
DEFAULT_EXIT_DRAIN_SECONDS = 1.0

EventKind = Literal["chunk", "eof", "watchdog"]
HeartbeatCallback = Callable[[int], None]


@dataclass(slots=True, frozen=True)
class SupervisorEvent:
    kind: EventKind
    text: str = ""
    generation: int = 0


@dataclass(slots=True)
class SupervisedRun:
    """Result of one supervised iteration."""

    output: str
    returncode: int | None
    started_at: int
    ended_at: int
    last_heartbeat_at: int | None = None
    timeout_kind: TimeoutKind | None = None
    chunk_count: int = 0
    discarded_chars: int = 0

    @property
    def timed_out(self) -> bool:
        return self.timeout_kind is not None

    @property
    def exit_ok(self) -> bool:
        return not self.timed_out and self.returncode == 0


class Watchdog:
    """Idle timer; every ``kick`` reschedules it and stales earlier expiries."""

    def __init__(self, seconds: float, events: queue.Queue[SupervisorEvent]) -> None:
        self.seconds = seconds
        self.events = events
        self.generation = 0
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def kick(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self.generation += 1
            self._timer = threading.Timer(self.seconds, self._expire, args=(self.generation,))
            self._timer.daemon = True
            self._timer.start()

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self.generation

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.generation += 1

    def _expire(self, generation: int) -> None:
        self.events.put(SupervisorEvent(kind="watchdog", generation=generation))


class ProcessSupervisor:
    """Runs one agent iteration and enforces idle and wall-clock limits."""

    def __init__(
        self,
        adapter: AgentAdapter,
        store: StateStore,
        *,
        watchdog_seconds: float = DEFAULT_WATCHDOG_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        drain_seconds: float = DEFAULT_EXIT_DRAIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.watchdog_seconds = watchdog_seconds
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds
        self.poll_interval = poll_interval
        self.drain_seconds = drain_seconds
        self.clock = clock
        self.active: AgentProcess | None = None

    def run_iteration(
        self,
        invocation: AgentInvocation,
        *,
        on_heartbeat: HeartbeatCallback | None = None,
    ) -> SupervisedRun:
        started_at = int(self.clock())
        process = self.adapter.spawn(invocation)
        self.active = process
        events: queue.Queue[SupervisorEvent] = queue.Queue()
        reader = threading.Thread(
            target=_read_stream, args=(process.stdout, events), name="agent-output", daemon=True
        )
        reader.start()

        watchdog = Watchdog(self.watchdog_seconds, events) if self.watchdog_seconds > 0 else None
        if watchdog is not None:
            watchdog.kick()
        deadline = time.monotonic() + self.timeout_seconds if self.timeout_seconds > 0 else None

        chunks: list[str] = []
        last_heartbeat_at: int | None = None
        timeout_kind: TimeoutKind | None = None
        stream_open = True
        drain_deadline: float | None = None
        try:
            while True:
                event = self._next_event(events)
                if event is not None and event.kind == "chunk":
                    chunks.append(event.text)
                    last_heartbeat_at = int(self.clock())
                    if watchdog is not None:
                        watchdog.kick()
                    self.store.append_live_activity(event.text)
                    if on_heartbeat is not None:
                        on_heartbeat(last_heartbeat_at)
                elif event is not None and event.kind == "eof":
                    stream_open = False
                elif (
                    event is not None
                    and event.kind == "watchdog"
                    and watchdog is not None
                    and watchdog.is_current(event.generation)
                ):
                    # An exited agent is never an idle timeout.
                    if process.poll() is not None:
                        break
                    timeout_kind = "idle"
                    break

                if deadline is not None and time.monotonic() >= deadline:
                    timeout_kind = "wall_clock"
                    break
                if process.poll() is not None:
                    if not stream_open:
                        break
                    if drain_deadline is None:
                        drain_deadline = time.monotonic() + self.drain_seconds
                    elif time.monotonic() >= drain_deadline:
                        break
        except BaseException:
            LOGGER.warning("agent_interrupted", extra={"pid": process.pid})
            process.terminate(self.grace_seconds)
            self.active = None
            raise
        finally:
            if watchdog is not None:
                watchdog.cancel()

        discarded = 0
        if timeout_kind is not None:
            returncode = process.terminate(self.grace_seconds)
        else:
            returncode = process.wait()
            if stream_open:
                self._release_pipe(process, reader)
        reader.join(timeout=self.grace_seconds)
        for text in _pending_chunks(events):
            chunks.append(text)
            self.store.append_live_activity(text)

        output = "".join(chunks)
        if timeout_kind is not None:
            limit = self.watchdog_seconds if timeout_kind == "idle" else self.timeout_seconds
            self.store.append_live_activity(
                f"[forge] {timeout_kind} watchdog triggered after {limit:g}s; iteration killed"
            )
            LOGGER.warning(
                "agent_watchdog_timeout",
                extra={"pid": process.pid, "timeout_kind": timeout_kind, "limit": limit},
            )
            # Output of a killed iteration never reaches the completion gate.
            discarded = len(output)
            output = ""
        self.active = None

        result = SupervisedRun(
            output=output,
            returncode=returncode,
            started_at=started_at,
            ended_at=int(self.clock()),
            last_heartbeat_at=last_heartbeat_at,
            timeout_kind=timeout_kind,
            chunk_count=len(chunks),
            discarded_chars=discarded,
        )
        LOGGER.info(
            "agent_iteration_finished",
            extra={
                "agent": self.adapter.name,
                "returncode": returncode,
                "timeout_kind": timeout_kind,
                "chunk_count": result.chunk_count,
                "output_length": len(output),
            },
        )
        return result

    def terminate_active(self) -> None:
        process = self.active
        if process is not None:
            process.terminate(self.grace_seconds)
            self.active = None

    def _next_event(self, events: queue.Queue[SupervisorEvent]) -> SupervisorEvent | None:
        try:
            return events.get(timeout=self.poll_interval)
        except queue.Empty:
            return None

    def _release_pipe(self, process: AgentProcess, reader: threading.Thread) -> None:
        """Stop leftover group members that keep the output pipe open."""
        LOGGER.info("agent_exited_with_open_stream", extra={"pid": process.pid})
        process.signal_group(force=False)
        reader.join(timeout=self.grace_seconds)
        if reader.is_alive():
            process.signal_group(force=True)


def _pending_chunks(events: queue.Queue[SupervisorEvent]) -> list[str]:
    pending: list[str] = []
    while True:
        try:
            event = events.get_nowait()
        except queue.Empty:
            return pending
        if event.kind == "chunk":
            pending.append(event.text)


def _read_stream(stream: IO[bytes] | None, events: queue.Queue[SupervisorEvent]) -> None:
    if stream is None:
        events.put(SupervisorEvent(kind="eof"))
        return
    try:
        for raw in iter(stream.readline, b""):
            events.put(SupervisorEvent(kind="chunk", text=_normalize_output(raw)))
    except (OSError, ValueError):
        pass
    finally:
        events.put(SupervisorEvent(kind="eof"))


def _normalize_output(payload: bytes) -> str:
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError:
        return payload.decode("utf-8", errors="replace")
