"""
Configuration for the matchroom engine.

Values default to the behaviour of a live event (5 minute conversations, one
3 minute extension, 1 second ticks) and can be overridden through
``MATCHROOM_*`` environment variables or a local ``.env`` file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Optional

from dotenv import load_dotenv


DEFAULT_SESSION_SECONDS: int = 300
DEFAULT_EXTENSION_SECONDS: int = 180
DEFAULT_TICK_SECONDS: float = 1.0
DEFAULT_REMATCH_DELAY: float = 1.0
DEFAULT_SEARCH_POLL: float = 1.0
DEFAULT_SCORER_TIMEOUT: float = 5.0
DEFAULT_CLAIM_RETRIES: int = 3
DEFAULT_PERSIST_RETRIES: int = 1
DEFAULT_RETRY_BACKOFF: float = 0.8
DEFAULT_ROSTER_POLL: float = 5.0
DEFAULT_OPENAI_MODEL: str = "gpt-5-mini"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class RoomSettings:
    session_seconds: int = DEFAULT_SESSION_SECONDS
    extension_seconds: int = DEFAULT_EXTENSION_SECONDS
    tick_seconds: float = DEFAULT_TICK_SECONDS
    rematch_delay: float = DEFAULT_REMATCH_DELAY
    search_poll: float = DEFAULT_SEARCH_POLL
    scorer_timeout: float = DEFAULT_SCORER_TIMEOUT
    max_claim_retries: int = DEFAULT_CLAIM_RETRIES
    persist_retries: int = DEFAULT_PERSIST_RETRIES
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    roster_poll: float = DEFAULT_ROSTER_POLL
    openai_model: str = DEFAULT_OPENAI_MODEL

    def __post_init__(self) -> None:
        if self.session_seconds <= 0:
            raise ValueError("session_seconds must be positive")
        if self.extension_seconds < 0:
            raise ValueError("extension_seconds must be non-negative")
        if self.max_claim_retries < 1:
            raise ValueError("max_claim_retries must be at least 1")
        if self.persist_retries < 1:
            raise ValueError("persist_retries must be at least 1 (one retry is mandatory)")

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "RoomSettings":
        """Build settings from the environment, loading ``.env`` first."""
        load_dotenv(dotenv_path)
        return cls(
            session_seconds=_env_int("MATCHROOM_SESSION_SECONDS", DEFAULT_SESSION_SECONDS),
            extension_seconds=_env_int("MATCHROOM_EXTENSION_SECONDS", DEFAULT_EXTENSION_SECONDS),
            tick_seconds=_env_float("MATCHROOM_TICK_SECONDS", DEFAULT_TICK_SECONDS),
            rematch_delay=_env_float("MATCHROOM_REMATCH_DELAY", DEFAULT_REMATCH_DELAY),
            search_poll=_env_float("MATCHROOM_SEARCH_POLL", DEFAULT_SEARCH_POLL),
            scorer_timeout=_env_float("MATCHROOM_SCORER_TIMEOUT", DEFAULT_SCORER_TIMEOUT),
            max_claim_retries=_env_int("MATCHROOM_CLAIM_RETRIES", DEFAULT_CLAIM_RETRIES),
            persist_retries=_env_int("MATCHROOM_PERSIST_RETRIES", DEFAULT_PERSIST_RETRIES),
            retry_backoff=_env_float("MATCHROOM_RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF),
            roster_poll=_env_float("MATCHROOM_ROSTER_POLL", DEFAULT_ROSTER_POLL),
            openai_model=os.environ.get("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
        )

    def with_overrides(self, **changes) -> "RoomSettings":
        return replace(self, **changes)


@dataclass(frozen=True)
class RoomContext:
    """Explicit per-room context handed to every component of a room."""

    event_id: str
    settings: RoomSettings = field(default_factory=RoomSettings)
    event_type: Optional[str] = None
