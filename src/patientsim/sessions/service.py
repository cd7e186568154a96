"""Session lifecycle API and the per-turn pipeline.

One :class:`SessionService` is built per process and handed to whichever
front-end needs it. It is the only code that mutates session records.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from ..analysis import ANALYSIS_TYPE, SessionAnalysis, build_analysis_request, parse_analysis
from ..context import ContextAssembler, TokenEstimator
from ..conversation import PATIENT, THERAPIST, Turn, TurnPair, validate_transcript
from ..errors import AdmissionDenied, PersistenceError, StateError, ValidationError
from ..personas import Persona, PersonaCatalog
from ..ratelimit import RateLimiter
from ..settings import EngineSettings
from ..text_generators.base import TextGeneratorAPI, Usage
from ..transcript_store import SessionOverview, SessionRecord, TranscriptStore
from .inactivity import AlarmClock, InactivityScheduler, LoopAlarmClock
from .registry import SessionRegistry, SessionSnapshot, SessionState, SessionStatus

_LOG = logging.getLogger(__name__)

# (session_id, user_id, snapshot)
LifecycleCallback = Callable[[str, str, SessionSnapshot], Awaitable[None]]

INACTIVITY_NOTE = "Session ended due to inactivity"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TurnResult:
    reply: str
    strategy: str
    usage: Usage
    message_count: int
    response_time: float = 0.0


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    status: SessionStatus
    duration_minutes: int
    message_count: int


class SessionService:
    """Create, drive and retire sessions."""

    def __init__(
        self,
        personas: PersonaCatalog,
        generator: TextGeneratorAPI,
        *,
        store: Optional[TranscriptStore] = None,
        settings: Optional[EngineSettings] = None,
        assembler: Optional[ContextAssembler] = None,
        rate_limiter: Optional[RateLimiter] = None,
        registry: Optional[SessionRegistry] = None,
        clock: Optional[AlarmClock] = None,
        on_inactivity_warning: Optional[LifecycleCallback] = None,
        on_inactivity_end: Optional[LifecycleCallback] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.personas = personas
        self.generator = generator
        self.store = store
        self.assembler = assembler or ContextAssembler(
            estimator=TokenEstimator(encoding=self.settings.token_encoding),
            model=self.settings.model,
            max_output_tokens=self.settings.max_output_tokens,
            temperature=self.settings.temperature,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=self.settings.rate_limit_max_requests,
            window=self.settings.rate_limit_window,
        )
        self.registry = registry or SessionRegistry()
        self.clock = clock or LoopAlarmClock()
        self.scheduler = InactivityScheduler(
            self.clock,
            warning_after=self.settings.inactivity_warning_after,
            end_after=self.settings.inactivity_end_after,
            on_warning=self._inactivity_warning,
            on_expire=self._inactivity_end,
        )
        self.on_inactivity_warning = on_inactivity_warning
        self.on_inactivity_end = on_inactivity_end
        self._now = now

    # ==================== Helpers ====================

    def _persona(self, persona_id: str) -> Persona:
        persona = self.personas.get(persona_id)
        if persona is None:
            raise ValidationError(f"Unknown persona {persona_id!r}")
        return persona

    async def _persist(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a store write off the loop and return its result.

        Failures are logged and give ``None``; they are never raised.
        """
        if self.store is None:
            return None
        try:
            return await asyncio.to_thread(func, *args)
        except PersistenceError as exc:
            _LOG.error(
                "Transcript store write failed (%s): %s", getattr(func, "__name__", func), exc
            )
            return None

    async def _load(self, method: str, *args: Any) -> Any:
        """Read from the store off the loop; read failures propagate."""
        if self.store is None:
            raise StateError("No transcript store configured")
        return await asyncio.to_thread(getattr(self.store, method), *args)

    def _activate(self, state: SessionState) -> None:
        state.touch(self._now())
        state.status = SessionStatus.ACTIVE
        self.scheduler.arm(state)

    async def _notify(self, callback: Optional[LifecycleCallback], state: SessionState) -> None:
        if callback is None:
            return
        try:
            await callback(state.id, state.user_id, state.snapshot())
        except Exception:  # noqa: BLE001
            _LOG.exception("Lifecycle callback %r failed for session %s", callback, state.id)

    async def _finish(
        self,
        state: SessionState,
        status: SessionStatus,
        notes: Optional[str] = None,
    ) -> SessionSummary:
        """Retire *state*. Caller holds the session lock."""
        self.scheduler.disarm(state)
        state.status = status
        state.warning_fired = False
        now = self._now()
        if self.store is not None:
            await self._persist(self.store.update_status, state.id, status.value, now, notes)
        self.registry.remove(state.id)
        duration = round((now - state.started_at).total_seconds() / 60)
        summary = SessionSummary(
            session_id=state.id,
            status=status,
            duration_minutes=max(duration, 0),
            message_count=len(state.transcript),
        )
        _LOG.info(
            "Session %s %s after %d min with %d turns",
            state.id,
            status.value,
            summary.duration_minutes,
            summary.message_count,
        )
        return summary

    # ==================== Inactivity hooks ====================

    async def _inactivity_warning(self, state: SessionState) -> None:
        await self._notify(self.on_inactivity_warning, state)

    async def _inactivity_end(self, state: SessionState) -> None:
        await self._finish(state, SessionStatus.ENDED, INACTIVITY_NOTE)
        await self._notify(self.on_inactivity_end, state)

    # ==================== Lifecycle API ====================

    async def create_session(
        self,
        user_id: str,
        persona_id: str,
        *,
        previous_turns: Sequence[Turn] = (),
        new_week: bool = False,
        previous_session_id: Optional[str] = None,
    ) -> SessionState:
        persona = self._persona(persona_id)
        turns = validate_transcript(previous_turns)
        state = self.registry.create(
            user_id,
            persona,
            transcript=turns,
            new_week=new_week,
            previous_session_id=previous_session_id,
            now=self._now(),
        )
        self._activate(state)
        if self.store is not None:
            await self._persist(
                self.store.record_session,
                SessionRecord(
                    id=state.id,
                    user_id=user_id,
                    persona_id=persona.id,
                    status=state.status.value,
                    started_at=state.started_at,
                    new_week=new_week,
                    previous_session_id=previous_session_id,
                ),
            )
        _LOG.info(
            "Session %s created for user %s with persona %s (new_week=%s, context=%d turns)",
            state.id,
            user_id,
            persona.id,
            new_week,
            len(turns),
        )
        return state

    async def handle_turn(self, session_id: str, content: str) -> TurnResult:
        """Process one therapist message and return the persona's reply.

        The inbound turn is kept and persisted before admission is checked,
        so a failed turn is reloaded on restore exactly as the persona would
        have seen it. Inactivity timers restart once the turn is finished.
        """
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content must be a non-empty string")
        state = self.registry.get(session_id)

        async with state.lock:
            state.require_live()
            was_paused = state.status is SessionStatus.PAUSED
            self._activate(state)
            prompt = Turn(THERAPIST, content)
            state.append(prompt)
            prompt_id: Optional[int] = None
            if self.store is not None:
                if was_paused:
                    await self._persist(self.store.update_status, state.id, SessionStatus.ACTIVE.value)
                prompt_id = await self._persist(self.store.append_prompt, state.id, prompt)

            try:
                if not self.rate_limiter.check_rate_limit(state.user_id):
                    raise AdmissionDenied(
                        "Rate limit exceeded. Please try again later.",
                        retry_after=self.rate_limiter.retry_after(state.user_id),
                    )

                payload = self.assembler.assemble(
                    state.transcript, state.persona.system_prompt, new_week=state.new_week
                )
                completion = await self.generator.complete(payload)

                reply = Turn(PATIENT, completion.text)
                state.append(reply)
                if prompt_id is not None:
                    await self._persist(
                        self.store.complete_prompt,
                        prompt_id,
                        reply,
                        completion.usage,
                        completion.model,
                        completion.response_time,
                    )
                elif self.store is not None:
                    await self._persist(
                        self.store.append,
                        state.id,
                        TurnPair(prompt, reply),
                        completion.usage,
                        completion.model,
                        completion.response_time,
                    )
            finally:
                # Alarms that fired while the upstream call was in flight are
                # queued on the lock; re-arming here makes them stale.
                self._activate(state)

            return TurnResult(
                reply=completion.text,
                strategy=payload.plan.label,
                usage=completion.usage,
                message_count=len(state.transcript),
                response_time=completion.response_time,
            )

    async def continue_session(self, session_id: str) -> SessionState:
        """Explicit "continue": clear any warning and restart normal monitoring."""
        state = self.registry.get(session_id)
        async with state.lock:
            state.require_live()
            was_paused = state.status is SessionStatus.PAUSED
            self._activate(state)
            if was_paused and self.store is not None:
                await self._persist(self.store.update_status, state.id, SessionStatus.ACTIVE.value)
        _LOG.info("Session %s continued by user", session_id)
        return state

    async def pause_session(self, session_id: str, duration: Optional[float] = None) -> SessionState:
        """Pause monitoring; after *duration* only a warning is raised.

        No termination alarm is armed by this path. A further continue, pause
        or inbound turn is needed to resume the normal two-stage escalation.
        """
        duration = self.settings.pause_duration if duration is None else duration
        if duration <= 0:
            raise ValidationError("Pause duration must be positive")
        state = self.registry.get(session_id)
        async with state.lock:
            state.require_live()
            state.touch(self._now())
            state.status = SessionStatus.PAUSED
            self.scheduler.arm_pause(state, duration)
            if self.store is not None:
                await self._persist(self.store.update_status, state.id, SessionStatus.PAUSED.value)
        _LOG.info("Session %s paused for %.0fs", session_id, duration)
        return state

    async def end_session(self, session_id: str, notes: Optional[str] = None) -> SessionSummary:
        state = self.registry.get(session_id)
        async with state.lock:
            state.require_live()
            return await self._finish(state, SessionStatus.ENDED, notes)

    async def restore_session(self, user_id: str, session_id: str) -> SessionState:
        """Rebuild a live session from the store, e.g. after a restart.

        The restored record is a fresh state machine: Active, no warning,
        fresh timers.
        """
        live = self.registry.find(session_id)
        if live is not None:
            if live.user_id != user_id:
                raise StateError("Session not found or access denied")
            return await self.continue_session(session_id)

        record = await self._load("get_session", session_id)
        if record is None or record.user_id != user_id:
            raise StateError("Session not found or access denied")
        if SessionStatus(record.status).is_terminal:
            raise StateError(f"Session {session_id} is already {record.status}")

        persona = self._persona(record.persona_id)
        turns: list[Turn] = []
        if record.previous_session_id:
            turns.extend(await self._load("load_all", record.previous_session_id))
        turns.extend(await self._load("load_all", session_id))

        state = self.registry.create(
            user_id,
            persona,
            transcript=turns,
            new_week=record.new_week,
            session_id=record.id,
            started_at=record.started_at,
            previous_session_id=record.previous_session_id,
            now=self._now(),
        )
        self._activate(state)
        await self._persist(self.store.update_status, state.id, SessionStatus.ACTIVE.value)
        _LOG.info("Session %s restored for user %s with %d turns", session_id, user_id, len(turns))
        return state

    async def start_new_week_session(
        self,
        user_id: str,
        persona_id: str,
        previous_session_id: str,
    ) -> SessionState:
        """Open a new session that remembers *previous_session_id* as last week's meeting."""
        record = await self._load("get_session", previous_session_id)
        if record is None or record.user_id != user_id:
            raise StateError("Previous session not found")
        previous = await self._load("load_all", previous_session_id)
        state = await self.create_session(
            user_id,
            persona_id,
            previous_turns=previous,
            new_week=True,
            previous_session_id=previous_session_id,
        )
        _LOG.info(
            "New week session %s started from %s with %d context turns",
            state.id,
            previous_session_id,
            len(previous),
        )
        return state

    def active_session_for(self, user_id: str) -> Optional[SessionState]:
        return self.registry.find_by_user(user_id)

    def get_session(self, session_id: str) -> SessionState:
        return self.registry.get(session_id)

    async def session_history(
        self, user_id: str, limit: int = 10, offset: int = 0
    ) -> list[SessionOverview]:
        return await self._load("session_history", user_id, limit, offset)

    # ==================== Supervision ====================

    async def analyze_session(self, user_id: str, session_id: str) -> SessionAnalysis:
        """Ask the model for a supervisor review of a stored session.

        Live sessions are refused; end the session first. The analysis counts
        against the user's rate limit and is stored when it parses.
        """
        if self.registry.find(session_id) is not None:
            raise StateError("End the session before requesting an analysis")
        record = await self._load("get_session", session_id)
        if record is None or record.user_id != user_id:
            raise StateError("Session not found or access denied")
        turns = await self._load("load_all", session_id)
        if not turns:
            raise StateError("No messages found for this session")

        ended_at = record.ended_at or self._now()
        duration = max(round((ended_at - record.started_at).total_seconds() / 60), 0)

        if not self.rate_limiter.check_rate_limit(user_id):
            raise AdmissionDenied(
                "Rate limit exceeded. Please try again later.",
                retry_after=self.rate_limiter.retry_after(user_id),
            )

        payload = build_analysis_request(
            self._persona(record.persona_id),
            turns,
            duration,
            model=self.settings.model,
            max_output_tokens=self.settings.max_output_tokens,
            temperature=self.settings.temperature,
            estimator=self.assembler.estimator,
        )
        completion = await self.generator.complete(payload)
        analysis = parse_analysis(completion.text)
        await self._persist(
            self.store.save_analysis,
            session_id,
            ANALYSIS_TYPE,
            analysis.to_dict(),
            analysis.overall_rating,
        )
        _LOG.info(
            "Session %s analyzed for user %s (rating=%s, %d turns)",
            session_id,
            user_id,
            analysis.overall_rating,
            len(turns),
        )
        return analysis

    # ==================== Maintenance ====================

    async def sweep_expired(self, now: Optional[datetime] = None) -> list[str]:
        """Cancel every session older than the hard age ceiling, active or not."""
        now = now or self._now()
        cancelled: list[str] = []
        for state in self.registry:
            if (now - state.started_at).total_seconds() <= self.settings.max_session_age:
                continue
            async with state.lock:
                if not state.is_live:
                    continue
                _LOG.info("Cleaning up expired session %s", state.id)
                await self._finish(state, SessionStatus.CANCELLED)
                cancelled.append(state.id)
        return cancelled

    def cleanup_rate_limits(self) -> int:
        return self.rate_limiter.cleanup()

    async def shutdown(self) -> None:
        """Cancel every outstanding alarm.

        Turn pairs are written as each turn completes, so there is nothing
        buffered to flush. Live sessions stay ``active`` in the store and can
        be restored after the restart.
        """
        count = 0
        for state in self.registry:
            self.scheduler.disarm(state)
            count += 1
        close = getattr(self.clock, "close", None)
        if close is not None:
            await close()
        _LOG.info("Session service shut down (%d live sessions disarmed)", count)
