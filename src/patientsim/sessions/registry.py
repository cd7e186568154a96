"""In-memory table of live sessions.

Each :class:`SessionState` owns its transcript, its lock and its pending
alarm set. Re-arming an alarm set is a single operation on the record that
cancels the old set and bumps the record's generation, so an alarm that
already fired but has not yet run its callback can tell it is stale.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional, Protocol

from ..conversation import Turn
from ..errors import StateError
from ..personas import Persona

_LOG = logging.getLogger(__name__)


class Alarm(Protocol):
    def cancel(self) -> None:
        ...


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.ENDED, SessionStatus.CANCELLED)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session handed to lifecycle callbacks."""

    id: str
    user_id: str
    persona_id: str
    status: SessionStatus
    phase: str
    message_count: int
    started_at: datetime
    last_activity_at: datetime
    warning_fired: bool
    new_week: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class SessionState:
    id: str
    user_id: str
    persona: Persona
    transcript: list[Turn] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    warning_fired: bool = False
    new_week: bool = False
    previous_session_id: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    generation: int = 0
    _alarms: list[Alarm] = field(default_factory=list, repr=False)

    @property
    def persona_id(self) -> str:
        return self.persona.id

    @property
    def is_live(self) -> bool:
        return not self.status.is_terminal

    @property
    def phase(self) -> str:
        """State-machine phase; a warned session is an active one with a warning out."""
        if self.status is SessionStatus.ACTIVE and self.warning_fired:
            return "warned"
        return self.status.value

    @property
    def pending_alarms(self) -> int:
        return len(self._alarms)

    def require_live(self) -> None:
        if not self.is_live:
            raise StateError(f"Session {self.id} is already {self.status.value}")

    def append(self, turn: Turn) -> None:
        self.require_live()
        self.transcript.append(turn)

    def touch(self, now: datetime) -> None:
        self.last_activity_at = now

    def rearm(self, schedule: Callable[[int], Iterable[Alarm]]) -> int:
        """Cancel the pending alarm set and install the one *schedule* builds.

        *schedule* receives the new generation number so the alarms it
        creates can recognise themselves later.
        """
        for alarm in self._alarms:
            alarm.cancel()
        self.generation += 1
        self._alarms = list(schedule(self.generation))
        return self.generation

    def disarm(self) -> None:
        self.rearm(lambda generation: ())

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            id=self.id,
            user_id=self.user_id,
            persona_id=self.persona_id,
            status=self.status,
            phase=self.phase,
            message_count=len(self.transcript),
            started_at=self.started_at,
            last_activity_at=self.last_activity_at,
            warning_fired=self.warning_fired,
            new_week=self.new_week,
        )


class SessionRegistry:
    """Live sessions keyed by opaque id, at most one per user."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}

    def create(
        self,
        user_id: str,
        persona: Persona,
        *,
        transcript: Iterable[Turn] = (),
        new_week: bool = False,
        session_id: Optional[str] = None,
        started_at: Optional[datetime] = None,
        previous_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SessionState:
        """Register a new live session.

        Raises :class:`StateError` if *user_id* already has a live session or
        the id is taken. The check and the insert happen without yielding to
        the event loop, so two concurrent creates cannot both succeed.
        """
        existing = self.find_by_user(user_id)
        if existing is not None:
            raise StateError(f"User {user_id} already has an active session {existing.id}")
        session_id = session_id or str(uuid.uuid4())
        if session_id in self._sessions:
            raise StateError(f"Session {session_id} is already live")

        now = now or _utcnow()
        state = SessionState(
            id=session_id,
            user_id=user_id,
            persona=persona,
            transcript=list(transcript),
            started_at=started_at or now,
            last_activity_at=now,
            new_week=new_week,
            previous_session_id=previous_session_id,
        )
        self._sessions[session_id] = state
        _LOG.debug("Registered session %s for user %s", session_id, user_id)
        return state

    def get(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise StateError(f"Session {session_id} not found or inactive")
        return state

    def find(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    def find_by_user(self, user_id: str) -> Optional[SessionState]:
        for state in self._sessions.values():
            if state.user_id == user_id:
                return state
        return None

    def remove(self, session_id: str) -> Optional[SessionState]:
        state = self._sessions.pop(session_id, None)
        if state is not None:
            _LOG.debug("Removed session %s from registry", session_id)
        return state

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[SessionState]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
