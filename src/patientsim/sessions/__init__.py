"""Session lifecycle: registry, inactivity escalation and the turn pipeline."""

from .registry import SessionRegistry, SessionSnapshot, SessionState, SessionStatus
from .inactivity import AlarmClock, InactivityScheduler, LoopAlarmClock
from .service import SessionService, SessionSummary, TurnResult

__all__ = [
    "SessionRegistry",
    "SessionSnapshot",
    "SessionState",
    "SessionStatus",
    "AlarmClock",
    "InactivityScheduler",
    "LoopAlarmClock",
    "SessionService",
    "SessionSummary",
    "TurnResult",
]
