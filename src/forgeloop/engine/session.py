"""Resume/fresh session identity resolution."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Literal

from forgeloop.errors import ConfigurationError
from forgeloop.runtime.records import RunSession
from forgeloop.runtime.store import StateStore

LOGGER = logging.getLogger(__name__)

ResumeMode = Literal["new", "explicit", "last"]


@dataclass(slots=True, frozen=True)
class SessionIdentity:
    """Agent session to use for the next iteration."""

    mode: ResumeMode = "new"
    session_id: str | None = None

    @property
    def resumable(self) -> bool:
        return self.mode != "new"


class SessionManager:
    def __init__(
        self,
        store: StateStore,
        *,
        resume_id: str | None = None,
        resume_latest: bool = False,
        fresh: bool = False,
    ) -> None:
        if resume_id is not None and not resume_id.strip():
            msg = "--resume requires a non-empty session id"
            raise ConfigurationError(msg)
        if resume_id and resume_latest:
            msg = "--resume and --resume-last cannot be combined"
            raise ConfigurationError(msg)
        if fresh and (resume_id or resume_latest):
            msg = "--fresh cannot be combined with --resume or --resume-last"
            raise ConfigurationError(msg)
        self.store = store
        self.resume_id = resume_id.strip() if resume_id else None
        self.resume_latest = resume_latest
        self.fresh = fresh

    def prepare(self) -> bool:
        """Apply a fresh-start request; returns whether state was discarded."""
        if not self.fresh:
            return False
        removed = self.store.clear()
        LOGGER.info("fresh_start", extra={"removed": removed})
        return True

    def start_run(self, *, now: int, working_directory: str, agent_kind: str) -> RunSession:
        session = RunSession(
            id=uuid.uuid4().hex,
            started_at=now,
            working_directory=working_directory,
            agent_kind=agent_kind,
            resumed_from=self.resolve().session_id,
        )
        self.store.save_run_session(session)
        return session

    def resolve(self) -> SessionIdentity:
        if self.resume_id:
            return SessionIdentity(mode="explicit", session_id=self.resume_id)
        if self.resume_latest:
            latest = self.store.load_session_id()
            if latest:
                return SessionIdentity(mode="explicit", session_id=latest)
            return SessionIdentity(mode="last")
        return SessionIdentity(mode="new")

    def remember(self, session_id: str | None) -> None:
        if not session_id:
            return
        if self.store.load_session_id() != session_id:
            self.store.save_session_id(session_id)
            LOGGER.debug("session_id_recorded", extra={"session_id": session_id})

    def finish(self, session: RunSession, outcome: str) -> None:
        session.outcome = outcome
        self.store.save_run_session(session)
