"""Prompt-caching strategy selection.

Three shapes are produced depending on transcript length:

* **simple** (<= 10 turns): the persona prompt is the system block, cached
  only when it is large enough to clear the provider's minimum cacheable
  size; every turn goes out verbatim.
* **sliding-window-literal** (11-29 turns): the last six turns stay literal,
  everything older is written into an enhanced system block as a
  role-labelled dialogue.
* **sliding-window-summarized** (>= 30 turns): as above, but older turns are
  replaced by a keyword digest.

Window strategies always cache the enhanced system block; the cache
annotation never lands on a message.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

from ..conversation import Turn

SIMPLE_MAX_MESSAGES = 10
SUMMARY_MIN_MESSAGES = 30
RECENT_WINDOW = 6
MIN_CACHEABLE_SYSTEM_TOKENS = 800


class CacheStrategy(str, enum.Enum):
    SIMPLE = "simple"
    SLIDING_WINDOW_LITERAL = "sliding-window-literal"
    SLIDING_WINDOW_SUMMARIZED = "sliding-window-summarized"

    @property
    def is_window(self) -> bool:
        return self is not CacheStrategy.SIMPLE


@dataclass(frozen=True)
class SystemSegment:
    text: str
    cacheable: bool

    def to_block(self) -> dict:
        block: dict = {"type": "text", "text": self.text}
        if self.cacheable:
            block["cache_control"] = {"type": "ephemeral"}
        return block


@dataclass(frozen=True)
class CachePlan:
    strategy: CacheStrategy
    system_segment: Optional[SystemSegment]
    recent_turns: tuple[Turn, ...]
    used_summary: bool

    @property
    def label(self) -> str:
        """Strategy name, split into cached/uncached for the simple case."""
        if self.strategy is CacheStrategy.SIMPLE:
            cached = self.system_segment is not None and self.system_segment.cacheable
            return "simple-cached" if cached else "simple-uncached"
        return self.strategy.value


def select_strategy(message_count: int, system_tokens: int) -> tuple[CacheStrategy, bool]:
    """Return the strategy and whether the system segment is cacheable."""
    if message_count < 0:
        raise ValueError("message_count must be non-negative")
    if message_count <= SIMPLE_MAX_MESSAGES:
        return CacheStrategy.SIMPLE, system_tokens >= MIN_CACHEABLE_SYSTEM_TOKENS
    if message_count < SUMMARY_MIN_MESSAGES:
        return CacheStrategy.SLIDING_WINDOW_LITERAL, True
    return CacheStrategy.SLIDING_WINDOW_SUMMARIZED, True


def split_window(turns: Sequence[Turn], size: int = RECENT_WINDOW) -> tuple[list[Turn], list[Turn]]:
    """Split *turns* into (older, recent) with ``len(recent) == min(size, len(turns))``."""
    cut = max(len(turns) - size, 0)
    return list(turns[:cut]), list(turns[cut:])


def render_dialogue(turns: Sequence[Turn]) -> str:
    return "\n".join(f"{turn.label}: {turn.content}" for turn in turns)


def frame_history(history: str, new_week: bool) -> str:
    """Wrap the older-turn block in its narrative framing."""
    if new_week:
        return (
            "PREVIOUS SESSION (one week ago):\n"
            f"{history}\n\n"
            "NEW MEETING:\n"
            "A week has passed since the previous session. Begin as if arriving for a new "
            "appointment, remembering what happened last time. You may mention how the week "
            "went, what has changed and what thoughts came up after the last meeting."
        )
    return (
        "PREVIOUS SESSION CONTEXT:\n"
        f"{history}\n\n"
        "THE CURRENT DIALOGUE CONTINUES:"
    )


class CachePlanner:
    """Turn strategy decisions into the literal request shape."""

    def plan_simple(
        self,
        turns: Sequence[Turn],
        system_prompt: Optional[str],
        cacheable: bool,
    ) -> CachePlan:
        segment = SystemSegment(system_prompt, cacheable) if system_prompt else None
        return CachePlan(
            strategy=CacheStrategy.SIMPLE,
            system_segment=segment,
            recent_turns=tuple(turns),
            used_summary=False,
        )

    def plan_window(
        self,
        strategy: CacheStrategy,
        recent: Sequence[Turn],
        system_prompt: Optional[str],
        history: str,
        new_week: bool,
    ) -> CachePlan:
        context = frame_history(history, new_week)
        text = f"{system_prompt}\n\n{context}" if system_prompt else context
        return CachePlan(
            strategy=strategy,
            system_segment=SystemSegment(text, cacheable=True),
            recent_turns=tuple(recent),
            used_summary=strategy is CacheStrategy.SLIDING_WINDOW_SUMMARIZED,
        )
