"""Circuit breaker that halts the loop after sustained no-progress."""

from __future__ import annotations

import logging

from forgeloop.runtime.records import BreakerEvent, CircuitBreakerState
from forgeloop.runtime.store import StateStore

LOGGER = logging.getLogger(__name__)

DEFAULT_NO_PROGRESS_LIMIT = 3
EVENT_TRIP = "trip"
EVENT_RESET = "reset"


def advance(
    state: CircuitBreakerState,
    *,
    progressed: bool,
    threshold: int,
    now: int,
) -> tuple[CircuitBreakerState, list[BreakerEvent]]:
    """Apply one iteration outcome to ``state``.

    An open breaker is left untouched: only :meth:`CircuitBreaker.reset`
    closes it again.
    """
    if state.is_open:
        return state, []

    if progressed:
        return CircuitBreakerState(consecutive_no_progress=0, status="closed"), []

    count = state.consecutive_no_progress + 1
    if count >= threshold:
        opened = CircuitBreakerState(consecutive_no_progress=count, status="open", opened_at=now)
        trip = BreakerEvent(
            timestamp=now,
            event=EVENT_TRIP,
            consecutive_no_progress=count,
            detail=f"{count} consecutive iterations without progress",
        )
        return opened, [trip]
    return CircuitBreakerState(consecutive_no_progress=count, status="closed"), []


class CircuitBreaker:
    def __init__(self, store: StateStore, *, threshold: int = DEFAULT_NO_PROGRESS_LIMIT) -> None:
        self.store = store
        self.threshold = max(1, threshold)

    def state(self) -> CircuitBreakerState:
        return self.store.load_breaker()

    def is_open(self) -> bool:
        return self.state().is_open

    def record(self, *, progressed: bool, now: int) -> CircuitBreakerState:
        previous = self.store.load_breaker()
        updated, events = advance(
            previous, progressed=progressed, threshold=self.threshold, now=now
        )
        if updated != previous:
            self.store.save_breaker(updated)
        for event in events:
            self.store.append_breaker_event(event)
            LOGGER.warning(
                "circuit_breaker_tripped",
                extra={"consecutive_no_progress": event.consecutive_no_progress},
            )
        return updated

    def reset(self, now: int, *, detail: str | None = None) -> CircuitBreakerState:
        previous = self.store.load_breaker()
        closed = CircuitBreakerState()
        self.store.save_breaker(closed)
        self.store.append_breaker_event(
            BreakerEvent(
                timestamp=now,
                event=EVENT_RESET,
                consecutive_no_progress=previous.consecutive_no_progress,
                detail=detail,
            )
        )
        LOGGER.info("circuit_breaker_reset", extra={"detail": detail})
        return closed

    def history(self) -> list[BreakerEvent]:
        return self.store.read_breaker_history()
