"""Keyword-based digest of older conversation turns.

A bag-of-words classifier: each chunk of turns is
tagged with every matching topic and with the first matching emotional tone
of the patient's lines.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from ..conversation import PATIENT, Turn

_LOG = logging.getLogger(__name__)

CHUNK_SIZE = 8

EMPTY_HISTORY = "The session has just started."

# Ordered; every matching topic is reported.
THEMES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("work and stress", ("work", "stress", "colleague", "boss", "project", "deadline")),
    ("relationships", ("family", "partner", "friends", "relationship", "love", "conflict")),
    ("emotions", ("anxiety", "depression", "anger", "fear", "joy", "sadness")),
    ("health", ("sleep", "fatigue", "illness", "treatment", "doctor")),
    ("personal growth", ("goals", "dreams", "plans", "growth", "success", "failure")),
)
DEFAULT_THEMES = "various personal matters"

# Ordered; the first matching tone wins.
EMOTIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("anxious", ("worry", "anxious", "scary", "worried", "nervous")),
    ("sad", ("sad", "unhappy", "upset", "depressed", "bad")),
    ("angry", ("angry", "furious", "annoying", "hate", "enraged")),
    ("positive", ("good", "glad", "happy", "great", "wonderful")),
    ("tired", ("tired", "draining", "exhausted", "no energy")),
)
DEFAULT_EMOTION = "mixed"
NO_PATIENT_EMOTION = "neutral"


def extract_themes(turns: Sequence[Turn]) -> str:
    """Return the ``discussed: ...`` phrase for a chunk of turns."""
    content = " ".join(turn.content for turn in turns).lower()
    found = [theme for theme, keywords in THEMES if any(k in content for k in keywords)]
    return f"discussed: {', '.join(found) if found else DEFAULT_THEMES}"


def extract_emotion(patient_turns: Sequence[Turn]) -> str:
    """Return the dominant tone of the patient's turns (first table match)."""
    if not patient_turns:
        return NO_PATIENT_EMOTION
    content = " ".join(turn.content for turn in patient_turns).lower()
    for emotion, keywords in EMOTIONS:
        if any(k in content for k in keywords):
            return emotion
    return DEFAULT_EMOTION


def chunk_turns(turns: Sequence[Turn], size: int = CHUNK_SIZE) -> list[list[Turn]]:
    return [list(turns[i:i + size]) for i in range(0, len(turns), size)]


class HistorySummarizer:
    """Compress a run of older turns into one sentence per chunk."""

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def summarize(self, turns: Sequence[Turn]) -> str:
        if not turns:
            return EMPTY_HISTORY

        chunks = chunk_turns(turns, self.chunk_size)
        sentences = []
        for index, chunk in enumerate(chunks, start=1):
            themes = extract_themes(chunk)
            emotion = extract_emotion([t for t in chunk if t.role == PATIENT])
            sentences.append(f"Segment {index}: {themes}. Emotional state: {emotion}.")

        summary = " ".join(sentences)
        _LOG.info(
            "Summarized %d turns into %d segments (%d chars)",
            len(turns),
            len(chunks),
            len(summary),
        )
        return summary

    def segment_count(self, turn_count: int) -> int:
        return math.ceil(turn_count / self.chunk_size) if turn_count > 0 else 0
