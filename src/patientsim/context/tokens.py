"""Token estimation for request budgeting."""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, Optional

import tiktoken

from ..settings import DEFAULT_TOKEN_ENCODING

_LOG = logging.getLogger(__name__)

# Roughly four characters per token for English prose.
CHARS_PER_TOKEN = 4


class TiktokenCounter:
    """Count tokens with a tiktoken encoding loaded on first use.

    Loading may need to fetch the encoding file. A failed load is remembered
    and re-raised on later calls instead of being retried for every estimate.
    """

    def __init__(self, encoding_name: str = DEFAULT_TOKEN_ENCODING) -> None:
        self.encoding_name = encoding_name
        self._encoding: Optional[tiktoken.Encoding] = None
        self._load_error: Optional[Exception] = None

    def _get_encoding(self) -> tiktoken.Encoding:
        if self._load_error is not None:
            raise self._load_error
        if self._encoding is None:
            try:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            except Exception as exc:  # noqa: BLE001
                _LOG.warning(
                    "Could not load tiktoken encoding %s, estimating by length: %s",
                    self.encoding_name,
                    exc,
                )
                self._load_error = exc
                raise
        return self._encoding

    def __call__(self, text: str) -> int:
        return len(self._get_encoding().encode(text, disallowed_special=()))


class TokenEstimator:
    """Approximate the provider's token count for a text blob.

    By default tokens are counted with tiktoken's ``encoding``. ``counter``
    replaces that with any other counting routine; ``encoding=None`` and no
    counter leaves only the ``ceil(len(text) / 4)`` estimate. The same
    estimate is used whenever the counter fails.
    """

    def __init__(
        self,
        counter: Optional[Callable[[str], int]] = None,
        *,
        encoding: Optional[str] = DEFAULT_TOKEN_ENCODING,
    ) -> None:
        if counter is None and encoding:
            counter = TiktokenCounter(encoding)
        self._counter = counter

    def estimate(self, text: Any) -> int:
        if not isinstance(text, str) or not text:
            return 0
        if self._counter is not None:
            try:
                count = int(self._counter(text))
            except Exception as exc:  # noqa: BLE001
                _LOG.debug("Token counter failed, using character fallback: %s", exc)
            else:
                if count >= 0:
                    return count
        return math.ceil(len(text) / CHARS_PER_TOKEN)
