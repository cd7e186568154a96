"""Discord front-end: practise sessions with a simulated patient.

Commands start, pause, continue, end and review sessions; any other message from a
user with a live session in the same channel becomes a therapist turn.
"""

from __future__ import annotations

import logging

import discord
from discord.ext import commands, tasks

from patientsim.errors import (
    AdmissionDenied,
    PersistenceError,
    StateError,
    UpstreamError,
    ValidationError,
)
from patientsim.personas import PersonaCatalog
from patientsim.sessions import SessionService, SessionSnapshot
from patientsim.settings import EngineSettings
from patientsim.text_generators import AnthropicTextGenerator
from patientsim.transcript_store import TranscriptStore

_LOG = logging.getLogger(__name__)

COMMAND_PREFIX = "!"
MAX_MESSAGE_LEN = 2000  # Discord hard limit


def split_message(text: str, limit: int = MAX_MESSAGE_LEN) -> list[str]:
    """Split *text* into Discord-sized chunks, preferring line breaks."""
    if not text:
        return []
    chunks: list[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


class SessionChat(commands.Cog):
    """Bridge between Discord channels and the session service."""

    def __init__(self, bot: commands.Bot, service: SessionService):
        self.bot = bot
        self.service = service
        # session id -> channel the session was started in
        self._channels: dict[str, int] = {}
        service.on_inactivity_warning = self._on_inactivity_warning
        service.on_inactivity_end = self._on_inactivity_end

    async def cog_load(self) -> None:
        self.sweep_sessions.start()
        self.cleanup_rate_limits.start()

    async def cog_unload(self) -> None:
        self.sweep_sessions.cancel()
        self.cleanup_rate_limits.cancel()
        await self.service.shutdown()

    # ==================== Maintenance loops ====================

    @tasks.loop(minutes=30)
    async def sweep_sessions(self):
        try:
            cancelled = await self.service.sweep_expired()
        except Exception as e:  # noqa: BLE001
            _LOG.error("Session sweep failed: %s", e)
            return
        for session_id in cancelled:
            self._channels.pop(session_id, None)

    @tasks.loop(minutes=5)
    async def cleanup_rate_limits(self):
        self.service.cleanup_rate_limits()

    # ==================== Lifecycle callbacks ====================

    async def _send_to_session_channel(self, session_id: str, text: str) -> None:
        channel_id = self._channels.get(session_id)
        channel = self.bot.get_channel(channel_id) if channel_id else None
        if channel is None:
            _LOG.error("No channel known for session %s; dropping notice", session_id)
            return
        await channel.send(text)

    async def _on_inactivity_warning(self, session_id: str, user_id: str, snapshot: SessionSnapshot) -> None:
        await self._send_to_session_channel(
            session_id,
            f"<@{user_id}> are you still there? The session will end soon without activity. "
            f"Use `{COMMAND_PREFIX}continue` to keep going or `{COMMAND_PREFIX}pause` to take a break.",
        )

    async def _on_inactivity_end(self, session_id: str, user_id: str, snapshot: SessionSnapshot) -> None:
        await self._send_to_session_channel(
            session_id,
            f"<@{user_id}> the session was ended due to inactivity "
            f"({snapshot.message_count} messages). Use `{COMMAND_PREFIX}newweek {snapshot.persona_id} {session_id}` "
            f"to pick up from it later.",
        )
        self._channels.pop(session_id, None)

    # ==================== Commands ====================

    @commands.command(name="personas")
    async def personas_cmd(self, ctx: commands.Context):
        """List available patient personas."""
        lines = [
            f"`{p.id}` {p.name}" + (f" ({p.presenting_problem})" if p.presenting_problem else "")
            for p in self.service.personas
        ]
        await ctx.send("\n".join(lines) if lines else "No personas are configured.")

    @commands.command(name="start")
    async def start_cmd(self, ctx: commands.Context, persona_id: str):
        """Start a session with a persona."""
        try:
            state = await self.service.create_session(str(ctx.author.id), persona_id)
        except (StateError, ValidationError) as exc:
            await ctx.send(str(exc))
            return
        self._channels[state.id] = ctx.channel.id
        await ctx.send(f"Session `{state.id}` started with {state.persona.name}. Say hello!")

    @commands.command(name="newweek")
    async def new_week_cmd(self, ctx: commands.Context, persona_id: str, previous_session_id: str):
        """Start a follow-up session one week after a previous one."""
        try:
            state = await self.service.start_new_week_session(
                str(ctx.author.id), persona_id, previous_session_id
            )
        except (StateError, ValidationError) as exc:
            await ctx.send(str(exc))
            return
        self._channels[state.id] = ctx.channel.id
        await ctx.send(f"Session `{state.id}` started. A week has passed since your last meeting.")

    @commands.command(name="resume")
    async def resume_cmd(self, ctx: commands.Context, session_id: str):
        """Reload a session that was live before a restart."""
        try:
            state = await self.service.restore_session(str(ctx.author.id), session_id)
        except (StateError, ValidationError) as exc:
            await ctx.send(str(exc))
            return
        self._channels[state.id] = ctx.channel.id
        await ctx.send(f"Session `{state.id}` restored with {len(state.transcript)} messages.")

    @commands.command(name="continue")
    async def continue_cmd(self, ctx: commands.Context):
        """Keep the current session going."""
        state = self.service.active_session_for(str(ctx.author.id))
        if state is None:
            await ctx.send("You have no active session.")
            return
        try:
            await self.service.continue_session(state.id)
        except StateError as exc:
            await ctx.send(str(exc))
            return
        await ctx.send("Session continues.")

    @commands.command(name="pause")
    async def pause_cmd(self, ctx: commands.Context, minutes: float | None = None):
        """Pause the current session for a while (default 15 minutes)."""
        state = self.service.active_session_for(str(ctx.author.id))
        if state is None:
            await ctx.send("You have no active session.")
            return
        try:
            await self.service.pause_session(state.id, minutes * 60 if minutes else None)
        except (StateError, ValidationError) as exc:
            await ctx.send(str(exc))
            return
        await ctx.send("Session paused.")

    @commands.command(name="end")
    async def end_cmd(self, ctx: commands.Context):
        """End the current session."""
        state = self.service.active_session_for(str(ctx.author.id))
        if state is None:
            await ctx.send("You have no active session.")
            return
        try:
            summary = await self.service.end_session(state.id)
        except StateError as exc:
            await ctx.send(str(exc))
            return
        self._channels.pop(state.id, None)
        await ctx.send(
            f"Session ended after {summary.duration_minutes} min and {summary.message_count} messages."
        )

    @commands.command(name="sessions")
    async def sessions_cmd(self, ctx: commands.Context):
        """Show your most recent sessions."""
        try:
            history = await self.service.session_history(str(ctx.author.id))
        except (StateError, PersistenceError) as exc:
            await ctx.send(f"Could not load your sessions: {exc}")
            return
        if not history:
            await ctx.send("You have no sessions yet.")
            return
        lines = []
        for item in history:
            record = item.record
            persona = self.service.personas.get(record.persona_id)
            name = persona.name if persona else record.persona_id
            rating = f", rated {item.rating:g}/10" if item.rating is not None else ""
            lines.append(
                f"`{record.id}` {name}, {record.started_at:%Y-%m-%d %H:%M}, "
                f"{record.status}, {item.message_count} messages{rating}"
            )
        for chunk in split_message("\n".join(lines)):
            await ctx.send(chunk)

    @commands.command(name="analyze")
    async def analyze_cmd(self, ctx: commands.Context, session_id: str | None = None):
        """Get supervisor feedback on a finished session (default: your latest)."""
        user_id = str(ctx.author.id)
        try:
            if session_id is None:
                history = await self.service.session_history(user_id)
                finished = [item for item in history if self.service.registry.find(item.record.id) is None]
                if not finished:
                    await ctx.send("You have no finished sessions to analyze.")
                    return
                session_id = finished[0].record.id
            async with ctx.channel.typing():
                analysis = await self.service.analyze_session(user_id, session_id)
        except AdmissionDenied as exc:
            wait = f" Try again in {exc.retry_after:.0f}s." if exc.retry_after else ""
            await ctx.send(f"You're sending requests too quickly.{wait}")
            return
        except (StateError, ValidationError, PersistenceError, UpstreamError) as exc:
            await ctx.send(f"Could not analyze session: {exc}")
            return

        lines = [f"**Supervisor feedback for `{session_id}`**"]
        if analysis.overall_rating is not None:
            lines.append(f"Overall rating: {analysis.overall_rating:g}/10")
        for title, items in (
            ("Strengths", analysis.strengths),
            ("Areas for improvement", analysis.areas_for_improvement),
            ("Recommendations", analysis.recommendations),
        ):
            if items:
                lines.append(f"\n**{title}**")
                lines.extend(f"- {item}" for item in items)
        for chunk in split_message("\n".join(lines)):
            await ctx.send(chunk)

    # ==================== Turns ====================

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message):
        if message.author.bot or not message.content or message.content.startswith(COMMAND_PREFIX):
            return
        state = self.service.active_session_for(str(message.author.id))
        if state is None or self._channels.get(state.id) != message.channel.id:
            return

        try:
            async with message.channel.typing():
                result = await self.service.handle_turn(state.id, message.content)
        except AdmissionDenied as exc:
            wait = f" Try again in {exc.retry_after:.0f}s." if exc.retry_after else ""
            await message.reply(f"You're sending messages too quickly.{wait}")
            return
        except UpstreamError as exc:
            await message.reply(str(exc))
            return
        except (StateError, ValidationError) as exc:
            await message.reply(str(exc))
            return

        for chunk in split_message(result.reply):
            await message.channel.send(chunk)


async def setup(bot: commands.Bot):
    settings = EngineSettings.from_env()
    service = SessionService(
        PersonaCatalog.from_directory(settings.persona_dir),
        AnthropicTextGenerator(settings.model),
        store=TranscriptStore(settings.transcript_db_path),
        settings=settings,
    )
    await bot.add_cog(SessionChat(bot, service))
