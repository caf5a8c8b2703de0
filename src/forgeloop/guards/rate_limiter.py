"""Hourly call budget backed by a persisted rolling counter."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from forgeloop.errors import ConfigurationError
from forgeloop.runtime.records import RateLimiterRecord
from forgeloop.runtime.store import StateStore

LOGGER = logging.getLogger(__name__)

WINDOW_SECONDS = 3600
DEFAULT_MAX_CALLS_PER_HOUR = 100


@dataclass(slots=True, frozen=True)
class Allowed:
    call_count: int
    remaining: int


@dataclass(slots=True, frozen=True)
class Denied:
    call_count: int
    retry_after: int


RateDecision = Allowed | Denied


def decide(record: RateLimiterRecord, *, limit: int, now: int) -> tuple[RateLimiterRecord, RateDecision]:
    """Pure budget decision; the returned record is what should be persisted."""
    count = record.call_count
    window_started_at = record.window_started_at
    if now - window_started_at >= WINDOW_SECONDS:
        count = 0
        window_started_at = now

    if count < limit:
        updated = RateLimiterRecord(call_count=count + 1, window_started_at=window_started_at)
        return updated, Allowed(call_count=updated.call_count, remaining=limit - updated.call_count)

    retry_after = max(0, WINDOW_SECONDS - (now - window_started_at))
    current = RateLimiterRecord(call_count=count, window_started_at=window_started_at)
    return current, Denied(call_count=count, retry_after=retry_after)


class RateLimiter:
    """Reloads the counter from disk on every call; nothing is cached in memory."""

    def __init__(self, store: StateStore, *, max_calls_per_hour: int = DEFAULT_MAX_CALLS_PER_HOUR) -> None:
        if max_calls_per_hour <= 0:
            msg = "max_calls_per_hour must be greater than 0"
            raise ConfigurationError(msg)
        self.store = store
        self.max_calls_per_hour = max_calls_per_hour

    def try_acquire(self, now: int) -> RateDecision:
        record = self.store.load_rate_limit()
        updated, decision = decide(record, limit=self.max_calls_per_hour, now=now)
        if isinstance(decision, Allowed):
            self.store.save_rate_limit(updated)
            LOGGER.debug(
                "rate_limit_acquired",
                extra={"call_count": decision.call_count, "remaining": decision.remaining},
            )
        else:
            LOGGER.warning(
                "rate_limit_denied",
                extra={"call_count": decision.call_count, "retry_after": decision.retry_after},
            )
        return decision

    def state(self) -> RateLimiterRecord:
        return self.store.load_rate_limit()

    def reset(self, now: int) -> None:
        self.store.save_rate_limit(RateLimiterRecord(call_count=0, window_started_at=now))
