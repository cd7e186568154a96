"""Tests for inactivity warning and termination alarms."""

from __future__ import annotations

import asyncio

import pytest

from patientsim.sessions import InactivityScheduler, LoopAlarmClock, SessionRegistry, SessionStatus


@pytest.fixture
def events():
    return []


@pytest.fixture
def scheduler(clock, events):
    async def on_warning(state):
        events.append(("warning", clock.time))

    async def on_expire(state):
        events.append(("end", clock.time))
        state.status = SessionStatus.ENDED

    return InactivityScheduler(clock, 3, 6, on_warning, on_expire)


@pytest.fixture
def state(persona):
    return SessionRegistry().create("u1", persona)


class TestEscalation:
    @pytest.mark.asyncio
    async def test_warning_then_end(self, scheduler, state, clock, events):
        scheduler.arm(state)
        await clock.advance(3)
        assert events == [("warning", 3)]
        assert state.phase == "warned"
        await clock.advance(3)
        assert events == [("warning", 3), ("end", 6)]

    @pytest.mark.asyncio
    async def test_activity_restarts_both_timers(self, scheduler, state, clock, events):
        scheduler.arm(state)
        await clock.advance(4)
        scheduler.arm(state)
        assert state.phase == "active"
        await clock.advance(6)
        assert events == [("warning", 3), ("warning", 7), ("end", 10)]

    @pytest.mark.asyncio
    async def test_at_most_one_pair_pending(self, scheduler, state, clock):
        for _ in range(5):
            scheduler.arm(state)
        assert clock.pending == 2
        assert state.pending_alarms == 2

    @pytest.mark.asyncio
    async def test_disarm_cancels_everything(self, scheduler, state, clock, events):
        scheduler.arm(state)
        scheduler.disarm(state)
        await clock.advance(100)
        assert events == []
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_terminal_state_ignores_alarm(self, scheduler, state, clock, events):
        scheduler.arm(state)
        state.status = SessionStatus.CANCELLED
        await clock.advance(10)
        assert events == []

    @pytest.mark.asyncio
    async def test_stale_generation_is_ignored(self, scheduler, state, clock, events):
        scheduler.arm(state)
        stale = state.generation
        scheduler.arm(state)
        await scheduler._warning_due(state, stale)
        await scheduler._end_due(state, stale)
        assert events == []
        assert state.warning_fired is False

    @pytest.mark.asyncio
    async def test_hook_failure_is_logged(self, clock, state, caplog):
        async def broken(state):
            raise RuntimeError("boom")

        scheduler = InactivityScheduler(clock, 1, 2, broken, broken)
        scheduler.arm(state)
        await clock.advance(2)
        assert "Inactivity warning hook failed" in caplog.text
        assert "Inactivity end hook failed" in caplog.text

    def test_end_must_follow_warning(self, clock):
        async def hook(state):
            pass

        with pytest.raises(ValueError):
            InactivityScheduler(clock, 6, 3, hook, hook)


class TestPause:
    @pytest.mark.asyncio
    async def test_pause_only_warns(self, scheduler, state, clock, events):
        scheduler.arm(state)
        await clock.advance(2)
        scheduler.arm_pause(state, 15)
        assert clock.pending == 1
        await clock.advance(100)
        assert events == [("warning", 17)]
        assert state.is_live

    @pytest.mark.asyncio
    async def test_rearm_after_pause(self, scheduler, state, clock, events):
        scheduler.arm_pause(state, 15)
        await clock.advance(5)
        scheduler.arm(state)
        await clock.advance(6)
        assert events == [("warning", 8), ("end", 11)]


class TestLoopAlarmClock:
    @pytest.mark.asyncio
    async def test_fires_callback(self):
        clock = LoopAlarmClock()
        fired = asyncio.Event()

        async def callback():
            fired.set()

        clock.schedule(0.01, callback)
        assert clock.pending == 1
        await asyncio.wait_for(fired.wait(), timeout=1)
        assert clock.pending == 0
        await clock.close()

    @pytest.mark.asyncio
    async def test_cancel_prevents_callback(self):
        clock = LoopAlarmClock()
        fired = []

        async def callback():
            fired.append(True)

        alarm = clock.schedule(0.01, callback)
        alarm.cancel()
        await asyncio.sleep(0.05)
        assert fired == []
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self):
        clock = LoopAlarmClock()

        async def callback():
            pass

        clock.schedule(60, callback)
        clock.schedule(120, callback)
        await clock.close()
        assert clock.pending == 0
