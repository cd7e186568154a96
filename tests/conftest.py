"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import tempfile
from pathlib import Path

import pytest

from patientsim.conversation import PATIENT, THERAPIST, Turn
from patientsim.personas import Persona, PersonaCatalog
from patientsim.sessions import SessionService
from patientsim.settings import EngineSettings
from patientsim.text_generators.base import Completion, TextGeneratorAPI, Usage
from patientsim.transcript_store import TranscriptStore


class ManualAlarm:
    def __init__(self):
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class ManualClock:
    """Alarm clock driven by ``advance`` instead of wall time."""

    def __init__(self):
        self.time = 0.0
        self._queue: list = []
        self._seq = itertools.count()

    def schedule(self, delay, callback):
        alarm = ManualAlarm()
        heapq.heappush(self._queue, (self.time + delay, next(self._seq), alarm, callback))
        return alarm

    @property
    def pending(self) -> int:
        return sum(1 for _, _, alarm, _ in self._queue if not alarm.cancelled and not alarm.fired)

    async def advance(self, seconds: float) -> None:
        target = self.time + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, alarm, callback = heapq.heappop(self._queue)
            if alarm.cancelled:
                continue
            self.time = due
            alarm.fired = True
            await callback()
        self.time = target


class FakeGenerator(TextGeneratorAPI):
    """Records payloads and answers with numbered replies.

    Queued ``replies`` are returned first. When ``gate`` is set, each call
    waits on it before answering.
    """

    def __init__(self):
        self.payloads = []
        self.error: Exception | None = None
        self.replies: list[str] = []
        self.gate: asyncio.Event | None = None
        self.usage = Usage(input_tokens=100, output_tokens=20, cache_creation_tokens=0, cache_read_tokens=80)

    async def complete(self, payload):
        self.payloads.append(payload)
        number = len(self.payloads)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return Completion(
            text=self.replies.pop(0) if self.replies else f"Reply {number}",
            model="fake-model",
            usage=self.usage,
            response_time=0.25,
        )


def make_transcript(count: int) -> list[Turn]:
    """Alternate therapist/patient turns, therapist first."""
    return [
        Turn(THERAPIST, f"therapist line {i}") if i % 2 == 0 else Turn(PATIENT, f"patient line {i}")
        for i in range(count)
    ]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db(temp_dir):
    """Path of a fresh database file."""
    yield str(temp_dir / "test.db")


@pytest.fixture
def store(temp_db):
    return TranscriptStore(temp_db)


@pytest.fixture
def persona():
    return Persona(
        id="anna",
        name="Anna",
        system_prompt="You are Anna, a tired project manager in counselling.",
        presenting_problem="Burnout",
    )


@pytest.fixture
def personas(persona):
    return PersonaCatalog([persona])


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def settings(temp_dir):
    return EngineSettings(
        inactivity_warning_after=3,
        inactivity_end_after=6,
        pause_duration=15,
        rate_limit_window=60,
        rate_limit_max_requests=100,
        token_encoding=None,
        transcript_db_path=temp_dir / "test.db",
        persona_dir=temp_dir / "personas",
    )


@pytest.fixture
def lifecycle_events():
    return {"warnings": [], "ends": []}


@pytest.fixture
def service(personas, generator, store, settings, clock, lifecycle_events):
    async def on_warning(session_id, user_id, snapshot):
        lifecycle_events["warnings"].append((session_id, user_id, snapshot))

    async def on_end(session_id, user_id, snapshot):
        lifecycle_events["ends"].append((session_id, user_id, snapshot))

    return SessionService(
        personas,
        generator,
        store=store,
        settings=settings,
        clock=clock,
        on_inactivity_warning=on_warning,
        on_inactivity_end=on_end,
    )
