from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from patientsim.context import RequestPayload


@dataclass(frozen=True)
class Usage:
    """Token counters reported by the provider for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def cache_hit(self) -> bool:
        return self.cache_read_tokens > 0

    @property
    def cache_created(self) -> bool:
        return self.cache_creation_tokens > 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )

    @classmethod
    def from_response(cls, usage: Any) -> "Usage":
        """Read SDK usage counters, treating missing or ``None`` fields as 0."""
        def _get(name: str) -> int:
            return int(getattr(usage, name, 0) or 0)

        if usage is None:
            return cls()
        return cls(
            input_tokens=_get("input_tokens"),
            output_tokens=_get("output_tokens"),
            cache_creation_tokens=_get("cache_creation_input_tokens"),
            cache_read_tokens=_get("cache_read_input_tokens"),
        )


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    usage: Usage = field(default_factory=Usage)
    response_time: float = 0.0


class TextGeneratorAPI(ABC):
    """Abstract base class for completion providers."""

    @abstractmethod
    async def complete(self, payload: "RequestPayload") -> Completion:
        """Send *payload* upstream and return the generated reply."""
        raise NotImplementedError
