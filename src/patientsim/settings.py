"""Runtime settings for the session engine.

Secrets (API keys, bot tokens) stay in ``.env``; everything here has a sane
default so the engine can be built in tests without any environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_MODEL = "claude-3-5-sonnet-20241022"

# Anthropic beta flag that enables cache_control on request blocks.
PROMPT_CACHING_BETA = "prompt-caching-2024-07-31"

# Claude ships no public tokenizer; cl100k_base is a close proxy for English.
DEFAULT_TOKEN_ENCODING = "cl100k_base"


def _project_root() -> Path:
    """Return the repository root.

    settings.py lives at src/patientsim/settings.py, so the root is two levels
    up from the package directory.
    """
    return Path(__file__).resolve().parents[2]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_encoding(name: str, default: Optional[str]) -> Optional[str]:
    """Return the tiktoken encoding name; "none" disables the tokenizer."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return None if raw.lower() == "none" else raw


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = _project_root() / path
    return path


@dataclass(frozen=True)
class EngineSettings:
    """Tunables for the context assembler, lifecycle timers and rate limiter.

    Durations are in seconds.
    """

    model: str = DEFAULT_MODEL
    max_output_tokens: int = 2000
    temperature: float = 0.7
    token_encoding: Optional[str] = DEFAULT_TOKEN_ENCODING

    rate_limit_window: float = 15 * 60
    rate_limit_max_requests: int = 100

    inactivity_warning_after: float = 5 * 60
    inactivity_end_after: float = 10 * 60
    pause_duration: float = 15 * 60
    max_session_age: float = 2 * 60 * 60

    transcript_db_path: Path = _project_root() / "data" / "transcripts.db"
    persona_dir: Path = _project_root() / "config" / "personas"

    def __post_init__(self):
        if self.inactivity_warning_after <= 0:
            raise ValueError("inactivity_warning_after must be positive")
        if self.inactivity_end_after <= self.inactivity_warning_after:
            raise ValueError("inactivity_end_after must be greater than inactivity_warning_after")
        if self.pause_duration <= 0:
            raise ValueError("pause_duration must be positive")
        if self.rate_limit_window <= 0 or self.rate_limit_max_requests <= 0:
            raise ValueError("rate limit window and max requests must be positive")
        if self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be positive")

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            model=os.getenv("ANTHROPIC_MODEL", "").strip() or defaults.model,
            max_output_tokens=_env_int("ANTHROPIC_MAX_TOKENS", defaults.max_output_tokens),
            temperature=_env_float("ANTHROPIC_TEMPERATURE", defaults.temperature),
            token_encoding=_env_encoding("TOKEN_ENCODING", defaults.token_encoding),
            rate_limit_window=_env_float("RATE_LIMIT_WINDOW_SECONDS", defaults.rate_limit_window),
            rate_limit_max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", defaults.rate_limit_max_requests),
            inactivity_warning_after=_env_float("INACTIVITY_WARNING_SECONDS", defaults.inactivity_warning_after),
            inactivity_end_after=_env_float("INACTIVITY_END_SECONDS", defaults.inactivity_end_after),
            pause_duration=_env_float("PAUSE_SECONDS", defaults.pause_duration),
            max_session_age=_env_float("MAX_SESSION_AGE_SECONDS", defaults.max_session_age),
            transcript_db_path=_env_path("TRANSCRIPT_DB_PATH", defaults.transcript_db_path),
            persona_dir=_env_path("PERSONA_DIR", defaults.persona_dir),
        )
