"""Runtime settings loaded from the environment.

A `.env` file in the working directory is loaded first, so every option can
be supplied either through the process environment or through that file.
Process environment wins over the file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

from dotenv import load_dotenv

QueueBackend = Literal["inline", "http"]

DEFAULT_GROQ_MODEL = "llama-3.3-70b-versatile"


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class TopicNames:
    """Names of the three delivery channels."""

    raw_sessions: str = "raw-messages"
    parsed_contacts: str = "parsed-messages"
    dead_letter: str = "dead-letter-queue"


@dataclass(frozen=True)
class Settings:
    """Process-wide settings. Built once at startup and passed down explicitly."""

    correlation_timeout_seconds: int = 120
    max_messages_per_session: int = 10
    allowed_sender: str | None = None

    groq_api_key: str | None = None
    groq_model: str = DEFAULT_GROQ_MODEL
    extraction_timeout_seconds: float = 30.0
    extraction_max_attempts: int = 3

    queue_backend: QueueBackend = "inline"
    topics: TopicNames = TopicNames()
    topic_partitions: int = 3

    database_url: str | None = None


def load_settings(env_file: str | None = ".env") -> Settings:
    """Build Settings from environment variables (and an optional .env file).

    Args:
        env_file: Path of a dotenv file to load first. None skips it.

    Returns:
        Frozen Settings instance.

    Raises:
        ValueError: If a numeric variable is not a positive number, or
            QUEUE_BACKEND names an unknown backend.
    """
    if env_file:
        load_dotenv(env_file, override=False)

    backend = os.environ.get("QUEUE_BACKEND", "inline").strip() or "inline"
    if backend not in ("inline", "http"):
        raise ValueError(f"Unknown QUEUE_BACKEND: {backend}")

    return Settings(
        correlation_timeout_seconds=_int_env("MESSAGE_CORRELATION_TIMEOUT_SECONDS", 120),
        max_messages_per_session=_int_env("MAX_MESSAGES_PER_SESSION", 10),
        allowed_sender=os.environ.get("WHATSAPP_ALLOWED_SENDER") or None,
        groq_api_key=os.environ.get("GROQ_API_KEY") or None,
        groq_model=os.environ.get("GROQ_MODEL") or DEFAULT_GROQ_MODEL,
        extraction_timeout_seconds=_float_env("EXTRACTION_TIMEOUT_SECONDS", 30.0),
        extraction_max_attempts=_int_env("EXTRACTION_MAX_ATTEMPTS", 3),
        queue_backend=backend,  # type: ignore[arg-type]
        topics=TopicNames(
            raw_sessions=os.environ.get("TOPIC_RAW_SESSIONS") or "raw-messages",
            parsed_contacts=os.environ.get("TOPIC_PARSED_CONTACTS") or "parsed-messages",
            dead_letter=os.environ.get("TOPIC_DEAD_LETTER") or "dead-letter-queue",
        ),
        topic_partitions=_int_env("TOPIC_PARTITIONS", 3),
        database_url=os.environ.get("DATABASE_URL") or None,
    )
