"""Inactivity escalation: warning, then automatic termination.

Timers are modelled as alarms on an :class:`AlarmClock`. The production
clock sits on the running asyncio loop; tests drive a manual clock. Alarm
callbacks take the session lock before touching the record, so they never
interleave with a turn that is being processed, and they check the record's
generation so an alarm superseded while it waited for the lock does nothing.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Optional, Protocol

from .registry import Alarm, SessionState

_LOG = logging.getLogger(__name__)

AlarmCallback = Callable[[], Awaitable[None]]
SessionHook = Callable[[SessionState], Awaitable[None]]


class AlarmClock(Protocol):
    def schedule(self, delay: float, callback: AlarmCallback) -> Alarm:
        ...


class _LoopAlarm:
    def __init__(self, clock: "LoopAlarmClock") -> None:
        self._clock = clock
        self.handle: Optional[asyncio.TimerHandle] = None
        self.fired = False
        self.cancelled = False

    def cancel(self) -> None:
        if self.fired or self.cancelled:
            return
        self.cancelled = True
        if self.handle is not None:
            self.handle.cancel()
        self._clock._pending.discard(self)


class LoopAlarmClock:
    """Alarm clock backed by ``loop.call_later``.

    A fired alarm runs its callback as a task; the clock keeps references to
    pending alarms and running tasks so ``close`` can cancel everything on
    shutdown.
    """

    def __init__(self) -> None:
        self._pending: set[_LoopAlarm] = set()
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, delay: float, callback: AlarmCallback) -> Alarm:
        loop = asyncio.get_running_loop()
        alarm = _LoopAlarm(self)
        alarm.handle = loop.call_later(max(delay, 0), self._fire, alarm, callback)
        self._pending.add(alarm)
        return alarm

    def _fire(self, alarm: _LoopAlarm, callback: AlarmCallback) -> None:
        alarm.fired = True
        self._pending.discard(alarm)
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def close(self) -> None:
        for alarm in list(self._pending):
            alarm.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class InactivityScheduler:
    """Per-session paired timers.

    ``arm`` (re)starts the warning and termination alarms; ``arm_pause``
    replaces them with one alarm that goes straight to the warning hook and
    arms nothing after it. ``on_warning`` and ``on_expire`` are awaited with
    the session lock held.
    """

    def __init__(
        self,
        clock: AlarmClock,
        warning_after: float,
        end_after: float,
        on_warning: SessionHook,
        on_expire: SessionHook,
    ) -> None:
        if end_after <= warning_after:
            raise ValueError("end_after must be greater than warning_after")
        self.clock = clock
        self.warning_after = warning_after
        self.end_after = end_after
        self._on_warning = on_warning
        self._on_expire = on_expire

    def arm(self, state: SessionState) -> int:
        state.warning_fired = False

        def _schedule(generation: int) -> list[Alarm]:
            return [
                self.clock.schedule(
                    self.warning_after, functools.partial(self._warning_due, state, generation)
                ),
                self.clock.schedule(
                    self.end_after, functools.partial(self._end_due, state, generation)
                ),
            ]

        generation = state.rearm(_schedule)
        _LOG.debug(
            "Armed inactivity monitoring for %s (warn %.0fs, end %.0fs, gen %d)",
            state.id,
            self.warning_after,
            self.end_after,
            generation,
        )
        return generation

    def arm_pause(self, state: SessionState, duration: float) -> int:
        # Only the warning is armed here; normal monitoring resumes on the next
        # continue, pause or inbound turn.
        state.warning_fired = False
        generation = state.rearm(
            lambda gen: [self.clock.schedule(duration, functools.partial(self._warning_due, state, gen))]
        )
        _LOG.debug("Armed pause alarm for %s (%.0fs, gen %d)", state.id, duration, generation)
        return generation

    def disarm(self, state: SessionState) -> None:
        state.disarm()

    async def _warning_due(self, state: SessionState, generation: int) -> None:
        async with state.lock:
            if state.generation != generation or not state.is_live:
                return
            state.warning_fired = True
            _LOG.info("Inactivity warning for session %s (user %s)", state.id, state.user_id)
            try:
                await self._on_warning(state)
            except Exception:  # noqa: BLE001
                _LOG.exception("Inactivity warning hook failed for session %s", state.id)

    async def _end_due(self, state: SessionState, generation: int) -> None:
        async with state.lock:
            if state.generation != generation or not state.is_live:
                return
            _LOG.info("Ending session %s due to inactivity", state.id)
            try:
                await self._on_expire(state)
            except Exception:  # noqa: BLE001
                _LOG.exception("Inactivity end hook failed for session %s", state.id)
