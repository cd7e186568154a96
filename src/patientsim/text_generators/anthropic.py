"""Completion backend that calls Anthropic's Claude models."""
from __future__ import annotations

import logging
import time
from typing import Dict, List

from anthropic import (
    APIConnectionError,
    APIError,
    APIStatusError,
    AsyncAnthropic,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
)

from patientsim.context import RequestPayload
from patientsim.errors import (
    UpstreamAuthenticationError,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from patientsim.settings import DEFAULT_MODEL, PROMPT_CACHING_BETA

from .base import Completion, TextGeneratorAPI, Usage

_log = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# A single shared client is plenty; reuse it across all requests              #
# --------------------------------------------------------------------------- #
_CLIENT_CACHE: Dict[str, AsyncAnthropic] = {}


class AnthropicTextGenerator(TextGeneratorAPI):
    """Send assembled payloads to Claude with prompt caching enabled.

    The class relies on the ``anthropic`` package and an ``ANTHROPIC_API_KEY``
    environment variable being present. The payload already carries the
    model, ``max_tokens``, temperature, the (optionally cache-annotated)
    system block and the literal messages; this class only adds the beta
    header, performs the call and normalises the response.

    Provider failures are re-raised as :class:`UpstreamError` subclasses.
    Nothing is retried here; backoff is the caller's decision.
    """

    def __init__(self, model: str = DEFAULT_MODEL) -> None:
        self.model = model

    # ---------------------------------------------------------------- helpers

    def _get_client(self) -> AsyncAnthropic:
        """Return (and cache) a shared ``AsyncAnthropic`` client instance."""
        if "default" not in _CLIENT_CACHE:
            _CLIENT_CACHE["default"] = AsyncAnthropic()  # picks up API key
        return _CLIENT_CACHE["default"]

    # ---------------------------------------------------------------- public

    async def complete(self, payload: RequestPayload) -> Completion:
        """Return Claude's reply for *payload*."""
        kwargs = payload.to_request_kwargs()
        kwargs["model"] = payload.model or self.model
        if any("cache_control" in m for m in kwargs["messages"]):
            # The endpoint rejects cache annotations on messages.
            raise UpstreamError("cache_control is only allowed on the system block")

        client = self._get_client()
        _log.info(
            "Sending request to Claude: model=%s strategy=%s messages=%d cached_system=%s",
            kwargs["model"],
            payload.plan.label,
            len(kwargs["messages"]),
            bool(kwargs.get("system") and "cache_control" in kwargs["system"][0]),
        )

        started = time.monotonic()
        try:
            response = await client.messages.create(
                **kwargs,
                extra_headers={"anthropic-beta": PROMPT_CACHING_BETA},
            )
        except RateLimitError as e:
            _log.warning("Anthropic rate limit hit for model %s: %s", kwargs["model"], e)
            raise UpstreamRateLimited("API rate limit exceeded. Please try again in a moment.", 429) from e
        except (AuthenticationError, PermissionDeniedError) as e:
            _log.error("Anthropic authentication failed for model %s: %s", kwargs["model"], e)
            raise UpstreamAuthenticationError(
                "API authentication failed. Please check configuration.", e.status_code
            ) from e
        except APIConnectionError as e:
            _log.error("Anthropic connection error for model %s: %s", kwargs["model"], e)
            raise UpstreamUnavailable("Claude API is unreachable. Please try again.") from e
        except APIStatusError as e:
            _log.error("Anthropic API error for model %s (status %s): %s", kwargs["model"], e.status_code, e.message)
            if e.status_code >= 500:
                raise UpstreamUnavailable(
                    "Claude API service temporarily unavailable. Please try again.", e.status_code
                ) from e
            raise UpstreamError(f"Claude API error: {e.message}", e.status_code) from e
        except APIError as e:
            _log.error("Anthropic API error for model %s: %s", kwargs["model"], e)
            raise UpstreamError(f"Claude API error: {e}") from e
        elapsed = time.monotonic() - started

        # SDK returns a list of content blocks; aggregate text blocks.
        parts: List[str] = []
        for block in getattr(response, "content", []) or []:
            text = getattr(block, "text", None)
            if text:
                parts.append(text)

        usage = Usage.from_response(getattr(response, "usage", None))
        _log.info(
            "Claude response in %.2fs: input=%d output=%d cache_created=%d cache_read=%d",
            elapsed,
            usage.input_tokens,
            usage.output_tokens,
            usage.cache_creation_tokens,
            usage.cache_read_tokens,
        )
        return Completion(
            text="".join(parts).strip(),
            model=getattr(response, "model", None) or kwargs["model"],
            usage=usage,
            response_time=elapsed,
        )
