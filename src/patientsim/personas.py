"""Simulated-patient personas.

Persona files are validated once when they are loaded; the rest of the
engine only ever sees ``Persona`` records.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import ValidationError

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class Persona:
    id: str
    name: str
    system_prompt: str
    presenting_problem: Optional[str] = None
    age: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Persona":
        """Validate a raw persona dict (for example parsed JSON)."""
        if not isinstance(data, Mapping):
            raise ValidationError("Persona must be a mapping")
        for key in ("id", "name", "system_prompt"):
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"Persona field {key!r} must be a non-empty string")
        problem = data.get("presenting_problem")
        if problem is not None and not isinstance(problem, str):
            raise ValidationError("Persona field 'presenting_problem' must be a string")
        age = data.get("age")
        if age is not None and (not isinstance(age, int) or isinstance(age, bool) or age < 0):
            raise ValidationError("Persona field 'age' must be a non-negative integer")
        return cls(
            id=data["id"].strip(),
            name=data["name"].strip(),
            system_prompt=data["system_prompt"],
            presenting_problem=problem,
            age=age,
        )


class PersonaCatalog:
    """In-memory lookup of personas by id."""

    def __init__(self, personas: Optional[list[Persona]] = None) -> None:
        self._personas: dict[str, Persona] = {}
        for persona in personas or []:
            self.add(persona)

    def add(self, persona: Persona) -> None:
        if persona.id in self._personas:
            raise ValidationError(f"Duplicate persona id {persona.id!r}")
        self._personas[persona.id] = persona

    def get(self, persona_id: str) -> Optional[Persona]:
        return self._personas.get(persona_id)

    def __contains__(self, persona_id: object) -> bool:
        return persona_id in self._personas

    def __iter__(self) -> Iterator[Persona]:
        return iter(sorted(self._personas.values(), key=lambda p: p.id))

    def __len__(self) -> int:
        return len(self._personas)

    @classmethod
    def from_directory(cls, directory: Path) -> "PersonaCatalog":
        """Load every ``*.json`` persona file in *directory*.

        Unreadable or invalid files are logged and skipped so one bad file
        does not take the whole catalog down.
        """
        catalog = cls()
        if not directory.is_dir():
            _LOG.warning("Persona directory %s does not exist", directory)
            return catalog
        for path in sorted(directory.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                catalog.add(Persona.from_mapping(data))
            except (OSError, json.JSONDecodeError, ValidationError) as exc:
                _LOG.error("Skipping persona file %s: %s", path, exc)
        _LOG.info("Loaded %d personas from %s", len(catalog), directory)
        return catalog
