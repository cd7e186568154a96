"""Build the upstream request payload for one turn."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from ..conversation import Turn, validate_transcript
from ..errors import ValidationError
from ..settings import DEFAULT_MODEL
from .cache_plan import (
    CachePlan,
    CachePlanner,
    CacheStrategy,
    render_dialogue,
    select_strategy,
    split_window,
)
from .summarizer import HistorySummarizer
from .tokens import TokenEstimator

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestPayload:
    """Provider-neutral request; ``to_request_kwargs`` shapes it for the SDK."""

    model: str
    max_output_tokens: int
    temperature: float
    plan: CachePlan
    messages: tuple[dict, ...] = field(default=())

    @property
    def system(self) -> Optional[list[dict]]:
        if self.plan.system_segment is None:
            return None
        return [self.plan.system_segment.to_block()]

    def to_request_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "messages": [dict(m) for m in self.messages],
        }
        system = self.system
        if system:
            kwargs["system"] = system
        return kwargs


class ContextAssembler:
    """Orchestrate token estimation, summarization and cache planning.

    ``assemble`` is pure with respect to its inputs: the same transcript and
    prompt always give an identical payload.
    """

    def __init__(
        self,
        estimator: Optional[TokenEstimator] = None,
        summarizer: Optional[HistorySummarizer] = None,
        planner: Optional[CachePlanner] = None,
        *,
        model: str = DEFAULT_MODEL,
        max_output_tokens: int = 2000,
        temperature: float = 0.7,
    ) -> None:
        self.estimator = estimator or TokenEstimator()
        self.summarizer = summarizer or HistorySummarizer()
        self.planner = planner or CachePlanner()
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    def plan(
        self,
        transcript: Sequence[Turn],
        system_prompt: Optional[str],
        *,
        new_week: bool = False,
    ) -> CachePlan:
        turns = validate_transcript(transcript)
        if system_prompt is not None and not isinstance(system_prompt, str):
            raise ValidationError("System prompt must be a string or None")

        system_tokens = self.estimator.estimate(system_prompt)
        strategy, cacheable = select_strategy(len(turns), system_tokens)

        if strategy is CacheStrategy.SIMPLE:
            plan = self.planner.plan_simple(turns, system_prompt, cacheable)
            if system_prompt and not cacheable:
                _LOG.info("System prompt too small for caching (%d tokens)", system_tokens)
        else:
            older, recent = split_window(turns)
            if strategy is CacheStrategy.SLIDING_WINDOW_SUMMARIZED:
                history = self.summarizer.summarize(older)
            else:
                history = render_dialogue(older)
            plan = self.planner.plan_window(strategy, recent, system_prompt, history, new_week)
            _LOG.info(
                "Sliding window: %d total, %d older, %d literal, enhanced system ~%d tokens",
                len(turns),
                len(older),
                len(recent),
                self.estimator.estimate(plan.system_segment.text),
            )

        _LOG.debug(
            "Planned %s for %d turns (system %d tokens, new_week=%s)",
            plan.label,
            len(turns),
            system_tokens,
            new_week,
        )
        return plan

    def assemble(
        self,
        transcript: Sequence[Turn],
        system_prompt: Optional[str],
        *,
        new_week: bool = False,
    ) -> RequestPayload:
        plan = self.plan(transcript, system_prompt, new_week=new_week)
        return RequestPayload(
            model=self.model,
            max_output_tokens=self.max_output_tokens,
            temperature=self.temperature,
            plan=plan,
            messages=tuple(turn.to_message() for turn in plan.recent_turns),
        )
