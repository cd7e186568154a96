"""Turn and transcript primitives."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import ValidationError

THERAPIST = "therapist"
PATIENT = "patient"
ROLES = (THERAPIST, PATIENT)

# The therapist drives the dialogue, the persona answers.
_API_ROLES = {THERAPIST: "user", PATIENT: "assistant"}
_LABELS = {THERAPIST: "Therapist", PATIENT: "Patient"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Turn:
    """One message exchanged within a session."""

    role: str
    content: str
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValidationError(f"Unknown turn role: {self.role!r}")
        if not isinstance(self.content, str):
            raise ValidationError("Turn content must be a string")

    @property
    def api_role(self) -> str:
        return _API_ROLES[self.role]

    @property
    def label(self) -> str:
        return _LABELS[self.role]

    def to_message(self) -> dict[str, str]:
        """Return the ``{"role", "content"}`` dict the Messages API expects."""
        return {"role": self.api_role, "content": self.content}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Turn":
        """Build a turn from a dict with ``role`` and ``content`` keys.

        Accepts the API role names (``user``/``assistant``) as aliases so
        transcripts exported in request shape can be fed back in.
        """
        if "role" not in data or "content" not in data:
            raise ValidationError("Each turn must have 'role' and 'content' keys")
        role = data["role"]
        if role == "user":
            role = THERAPIST
        elif role == "assistant":
            role = PATIENT
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            try:
                created_at = datetime.fromisoformat(created_at)
            except ValueError as exc:
                raise ValidationError(f"Bad created_at value: {created_at!r}") from exc
        if created_at is None:
            return cls(role=role, content=data["content"])
        if not isinstance(created_at, datetime):
            raise ValidationError("created_at must be a datetime or ISO string")
        return cls(role=role, content=data["content"], created_at=created_at)


@dataclass(frozen=True)
class TurnPair:
    """A therapist turn and the persona reply it produced."""

    prompt: Turn
    reply: Turn

    def __post_init__(self):
        if self.prompt.role != THERAPIST or self.reply.role != PATIENT:
            raise ValidationError("A turn pair is a therapist turn followed by a patient turn")

    def __iter__(self):
        yield self.prompt
        yield self.reply


def validate_transcript(transcript: Any) -> list[Turn]:
    """Return *transcript* as a list of ``Turn`` or raise ``ValidationError``.

    Dict entries are converted; nothing is dropped or reordered.
    """
    if isinstance(transcript, (str, bytes)) or not isinstance(transcript, Sequence):
        raise ValidationError("Transcript must be a sequence of turns")
    turns: list[Turn] = []
    for index, item in enumerate(transcript):
        if isinstance(item, Turn):
            turns.append(item)
        elif isinstance(item, Mapping):
            try:
                turns.append(Turn.from_mapping(item))
            except ValidationError as exc:
                raise ValidationError(f"Turn {index}: {exc}") from exc
        else:
            raise ValidationError(f"Turn {index} has unsupported type {type(item).__name__}")
    return turns
