"""Tests for the Discord session cog."""

from __future__ import annotations

import contextlib
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import discord
import pytest
from discord.ext import commands

from patientsim.cogs.session_chat import SessionChat, split_message
from patientsim.errors import StateError, UpstreamRateLimited
from patientsim.ratelimit import RateLimiter


class DummyChannel:
    def __init__(self, channel_id=100):
        self.id = channel_id
        self.sent = []

    async def send(self, content):
        self.sent.append(content)

    @contextlib.asynccontextmanager
    async def typing(self):
        yield


class DummyCtx:
    def __init__(self, channel, user_id=1):
        self.sent = []
        self.channel = channel
        self.author = SimpleNamespace(id=user_id, bot=False)

    async def send(self, content):
        self.sent.append(content)


class DummyMessage:
    def __init__(self, content, channel, user_id=1, bot=False):
        self.content = content
        self.channel = channel
        self.author = SimpleNamespace(id=user_id, bot=bot)
        self.replies = []

    async def reply(self, content):
        self.replies.append(content)


@pytest.fixture
def channel():
    return DummyChannel()


@pytest.fixture
def cog(service, channel):
    bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
    bot.get_channel = lambda channel_id: channel if channel_id == channel.id else None
    return SessionChat(bot, service)


async def start(cog, channel, user_id=1):
    ctx = DummyCtx(channel, user_id)
    await cog.start_cmd.callback(cog, ctx, "anna")
    return ctx


class TestSplitMessage:
    def test_short(self):
        assert split_message("hello") == ["hello"]
        assert split_message("") == []

    def test_prefers_newlines(self):
        text = "a" * 10 + "\n" + "b" * 10
        assert split_message(text, limit=15) == ["a" * 10, "b" * 10]

    def test_hard_split(self):
        assert split_message("x" * 25, limit=10) == ["x" * 10, "x" * 10, "x" * 5]


class TestCommands:
    @pytest.mark.asyncio
    async def test_personas(self, cog, channel):
        ctx = DummyCtx(channel)
        await cog.personas_cmd.callback(cog, ctx)
        assert ctx.sent == ["`anna` Anna (Burnout)"]

    @pytest.mark.asyncio
    async def test_start(self, cog, channel, service):
        ctx = await start(cog, channel)
        state = service.active_session_for("1")
        assert state is not None
        assert ctx.sent == [f"Session `{state.id}` started with Anna. Say hello!"]

    @pytest.mark.asyncio
    async def test_start_twice(self, cog, channel):
        await start(cog, channel)
        ctx = await start(cog, channel)
        assert "already has an active session" in ctx.sent[0]

    @pytest.mark.asyncio
    async def test_start_unknown_persona(self, cog, channel):
        ctx = DummyCtx(channel)
        await cog.start_cmd.callback(cog, ctx, "nobody")
        assert "Unknown persona" in ctx.sent[0]

    @pytest.mark.asyncio
    async def test_pause_continue_end(self, cog, channel, service):
        await start(cog, channel)
        ctx = DummyCtx(channel)
        await cog.pause_cmd.callback(cog, ctx, 5)
        await cog.continue_cmd.callback(cog, ctx)
        await cog.end_cmd.callback(cog, ctx)
        assert ctx.sent[:2] == ["Session paused.", "Session continues."]
        assert ctx.sent[2].startswith("Session ended after 0 min")
        assert service.active_session_for("1") is None

    @pytest.mark.asyncio
    async def test_commands_without_session(self, cog, channel):
        ctx = DummyCtx(channel)
        await cog.continue_cmd.callback(cog, ctx)
        await cog.pause_cmd.callback(cog, ctx)
        await cog.end_cmd.callback(cog, ctx)
        assert ctx.sent == ["You have no active session."] * 3

    @pytest.mark.asyncio
    async def test_new_week(self, cog, channel, service):
        await start(cog, channel)
        first = service.active_session_for("1")
        await service.end_session(first.id)
        ctx = DummyCtx(channel)
        await cog.new_week_cmd.callback(cog, ctx, "anna", first.id)
        assert "A week has passed" in ctx.sent[0]
        assert service.active_session_for("1").new_week is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command, method", [
        ("continue_cmd", "continue_session"),
        ("pause_cmd", "pause_session"),
        ("end_cmd", "end_session"),
    ])
    async def test_session_gone_between_lookup_and_command(self, cog, channel, service, command, method):
        await start(cog, channel)
        ctx = DummyCtx(channel)
        gone = AsyncMock(side_effect=StateError("Session s1 is ended"))
        with patch.object(service, method, gone):
            await getattr(cog, command).callback(cog, ctx)
        assert ctx.sent == ["Session s1 is ended"]


class TestHistoryCommands:
    @pytest.mark.asyncio
    async def test_sessions_lists_history(self, cog, channel, service):
        await start(cog, channel)
        state = service.active_session_for("1")
        await service.handle_turn(state.id, "hello")
        await service.end_session(state.id)

        ctx = DummyCtx(channel)
        await cog.sessions_cmd.callback(cog, ctx)
        (line,) = ctx.sent
        assert line.startswith(f"`{state.id}` Anna, ")
        assert line.endswith("ended, 2 messages")

    @pytest.mark.asyncio
    async def test_sessions_empty(self, cog, channel):
        ctx = DummyCtx(channel)
        await cog.sessions_cmd.callback(cog, ctx)
        assert ctx.sent == ["You have no sessions yet."]

    @pytest.mark.asyncio
    async def test_analyze_latest_finished_session(self, cog, channel, service, generator):
        await start(cog, channel)
        state = service.active_session_for("1")
        await service.handle_turn(state.id, "hello")
        await service.end_session(state.id)
        generator.replies.append(json.dumps({
            "overall_rating": 7,
            "strengths": ["Warm tone"],
            "areas_for_improvement": ["Slow down"],
            "recommendations": ["Summarise more often"],
        }))

        ctx = DummyCtx(channel)
        await cog.analyze_cmd.callback(cog, ctx)
        text = "\n".join(ctx.sent)
        assert f"Supervisor feedback for `{state.id}`" in text
        assert "Overall rating: 7/10" in text
        assert "- Warm tone" in text
        assert "- Summarise more often" in text

        ctx = DummyCtx(channel)
        await cog.sessions_cmd.callback(cog, ctx)
        assert ctx.sent[0].endswith("rated 7/10")

    @pytest.mark.asyncio
    async def test_analyze_without_finished_sessions(self, cog, channel):
        await start(cog, channel)
        ctx = DummyCtx(channel)
        await cog.analyze_cmd.callback(cog, ctx)
        assert ctx.sent == ["You have no finished sessions to analyze."]

    @pytest.mark.asyncio
    async def test_analyze_live_session_refused(self, cog, channel, service):
        await start(cog, channel)
        state = service.active_session_for("1")
        ctx = DummyCtx(channel)
        await cog.analyze_cmd.callback(cog, ctx, state.id)
        assert ctx.sent[0].startswith("Could not analyze session: End the session")

    @pytest.mark.asyncio
    async def test_analyze_bad_reply(self, cog, channel, service, generator):
        await start(cog, channel)
        state = service.active_session_for("1")
        await service.handle_turn(state.id, "hello")
        await service.end_session(state.id)
        generator.replies.append("No JSON here.")
        ctx = DummyCtx(channel)
        await cog.analyze_cmd.callback(cog, ctx, state.id)
        assert ctx.sent[0].startswith("Could not analyze session:")


class TestTurns:
    @pytest.mark.asyncio
    async def test_message_becomes_turn(self, cog, channel, generator):
        await start(cog, channel)
        await cog.on_message(DummyMessage("How are you today?", channel))
        assert channel.sent == ["Reply 1"]
        assert generator.payloads[0].messages[-1]["content"] == "How are you today?"

    @pytest.mark.asyncio
    async def test_ignores_other_channels_bots_and_commands(self, cog, channel, generator):
        await start(cog, channel)
        await cog.on_message(DummyMessage("hi", DummyChannel(channel_id=999)))
        await cog.on_message(DummyMessage("hi", channel, bot=True))
        await cog.on_message(DummyMessage("!help", channel))
        await cog.on_message(DummyMessage("hi", channel, user_id=2))
        assert generator.payloads == []

    @pytest.mark.asyncio
    async def test_rate_limited_reply(self, cog, channel, service):
        service.rate_limiter = RateLimiter(max_requests=1, window=60)
        await start(cog, channel)
        await cog.on_message(DummyMessage("one", channel))
        message = DummyMessage("two", channel)
        await cog.on_message(message)
        assert message.replies[0].startswith("You're sending messages too quickly.")

    @pytest.mark.asyncio
    async def test_upstream_error_reply(self, cog, channel, generator):
        generator.error = UpstreamRateLimited("API rate limit exceeded.", 429)
        await start(cog, channel)
        message = DummyMessage("hello", channel)
        await cog.on_message(message)
        assert message.replies == ["API rate limit exceeded."]
        assert channel.sent == []


class TestInactivityNotices:
    @pytest.mark.asyncio
    async def test_warning_and_end_are_posted(self, cog, channel, clock):
        await start(cog, channel)
        await clock.advance(3)
        assert "are you still there?" in channel.sent[0]
        await clock.advance(3)
        assert "ended due to inactivity" in channel.sent[1]
        assert "!newweek anna" in channel.sent[1]
