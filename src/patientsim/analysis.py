"""Supervisor review of a finished session.

The whole stored dialogue is sent once, with a supervisor brief as the
system block, and the model is asked for a JSON verdict.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from .context import CachePlan, CacheStrategy, RequestPayload, SystemSegment, TokenEstimator
from .context.cache_plan import MIN_CACHEABLE_SYSTEM_TOKENS
from .conversation import THERAPIST, Turn
from .errors import ValidationError
from .personas import Persona

_LOG = logging.getLogger(__name__)

SUPERVISOR_PROMPT = """You are an experienced clinical supervisor with more than twenty years of \
practice. Review the therapy session below and give the therapist constructive feedback.

ASSESS:
1. The therapist's technical skills
2. The quality of therapeutic interventions
3. Rapport building with the client
4. Observance of ethical boundaries
5. Effectiveness of the chosen techniques

Answer with JSON only, in this shape:
{
  "overall_rating": number from 1 to 10,
  "strengths": ["strength 1", "strength 2"],
  "areas_for_improvement": ["area 1", "area 2"],
  "specific_feedback": {
    "rapport_building": "comment",
    "intervention_quality": "comment",
    "therapeutic_technique": "comment",
    "ethical_considerations": "comment"
  },
  "recommendations": ["recommendation 1", "recommendation 2"],
  "key_moments": ["moment 1", "moment 2"]
}"""

ANALYSIS_TYPE = "supervisor"


def _string_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if item)


@dataclass(frozen=True)
class SessionAnalysis:
    overall_rating: Optional[float]
    strengths: tuple[str, ...] = ()
    areas_for_improvement: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    key_moments: tuple[str, ...] = ()
    specific_feedback: dict = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SessionAnalysis":
        rating = data.get("overall_rating")
        if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 10:
            rating = None
        feedback = data.get("specific_feedback")
        return cls(
            overall_rating=rating,
            strengths=_string_list(data.get("strengths")),
            areas_for_improvement=_string_list(data.get("areas_for_improvement")),
            recommendations=_string_list(data.get("recommendations")),
            key_moments=_string_list(data.get("key_moments")),
            specific_feedback={str(k): str(v) for k, v in feedback.items()}
            if isinstance(feedback, Mapping)
            else {},
        )

    def to_dict(self) -> dict:
        return {
            "overall_rating": self.overall_rating,
            "strengths": list(self.strengths),
            "areas_for_improvement": list(self.areas_for_improvement),
            "recommendations": list(self.recommendations),
            "key_moments": list(self.key_moments),
            "specific_feedback": dict(self.specific_feedback),
        }


def parse_analysis(text: str) -> SessionAnalysis:
    """Extract the JSON object from a supervisor reply.

    Models sometimes wrap the object in prose, so everything outside the
    outermost braces is ignored.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise ValidationError("Supervisor reply did not contain a JSON object")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Supervisor reply was not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Supervisor reply was not a JSON object")
    return SessionAnalysis.from_mapping(data)


def render_session(persona: Persona, turns: Sequence[Turn], duration_minutes: int) -> str:
    """Build the single user message the supervisor is asked to review."""
    dialogue = "\n\n".join(
        f"{'Therapist' if turn.role == THERAPIST else 'Client'}: {turn.content}" for turn in turns
    )
    return (
        "Review this therapy session.\n\n"
        "CLIENT INFORMATION:\n"
        f"- Name: {persona.name}\n"
        f"- Presenting problem: {persona.presenting_problem or 'not specified'}\n"
        f"- Session length: {duration_minutes} minutes\n\n"
        "DIALOGUE:\n"
        f"{dialogue}"
    )


def build_analysis_request(
    persona: Persona,
    turns: Sequence[Turn],
    duration_minutes: int,
    *,
    model: str,
    max_output_tokens: int,
    temperature: float,
    estimator: Optional[TokenEstimator] = None,
) -> RequestPayload:
    if not turns:
        raise ValidationError("Cannot analyze a session without messages")
    estimator = estimator or TokenEstimator()
    cacheable = estimator.estimate(SUPERVISOR_PROMPT) >= MIN_CACHEABLE_SYSTEM_TOKENS
    plan = CachePlan(
        strategy=CacheStrategy.SIMPLE,
        system_segment=SystemSegment(SUPERVISOR_PROMPT, cacheable),
        recent_turns=(),
        used_summary=False,
    )
    _LOG.debug("Built analysis request over %d turns", len(turns))
    return RequestPayload(
        model=model,
        max_output_tokens=max_output_tokens,
        temperature=temperature,
        plan=plan,
        messages=({"role": "user", "content": render_session(persona, turns, duration_minutes)},),
    )
