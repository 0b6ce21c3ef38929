"""Thin wrapper around the Groq SDK for contact extraction.

Purpose:
- Encapsulate the LLM call so the processing stage never imports groq directly.
- One call per extract(); retries are the caller's job, so SDK retries are off.
- Bound every call with a timeout so a hung request cannot stall a partition.
- Never log message text or extracted values (only lengths and flags).
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from typing import Any, Protocol

import groq
from groq import Groq

from contactly.config import DEFAULT_GROQ_MODEL
from contactly.observability.logging import get_logger
from contactly.observability.redaction import safe_log_context

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a precise data extraction assistant. Always respond with valid JSON only."
)

# Used when the model omits a confidence value
DEFAULT_CONFIDENCE = 0.5


class ExtractionError(Exception):
    """Raised when the extraction call fails or returns an unusable response."""

    pass


@dataclass(frozen=True)
class ExtractionResponse:
    """Raw fields returned by the extraction service."""

    data: dict[str, Any]
    model: str
    response_ms: int


class ContactExtractor(Protocol):
    """Protocol for extraction services."""

    def extract(self, combined_text: str, push_name: str) -> ExtractionResponse:
        """Extract contact fields from the combined session text."""
        ...


def build_prompt(message_text: str, sender_name: str) -> str:
    """Build the extraction prompt for one session."""
    return f"""You are an AI assistant that extracts contact information from WhatsApp messages.

The messages may be in English, Hindi, Hinglish (mixed), or other Indian languages.
The text may contain spelling mistakes, grammatical errors, and informal language.
Messages may be split across multiple lines (the sender sent information in parts).

Extract the following information from the messages:
1. **Name**: The full name of the person (not the WhatsApp profile name, but from the message content)
2. **Address**: Complete address including street, city, state, pincode if available
3. **Mobile/Phone**: Phone number (may have country code, spaces, dashes)

IMPORTANT RULES:
- If the sender's WhatsApp profile name is "{sender_name}", do NOT use this as the extracted name unless the message confirms it
- Extract ONLY information explicitly mentioned in the messages
- If a field is not found, set it to null
- For phone numbers, extract in standardized format (just digits, no spaces)
- Be generous in interpretation - people write informally

Return a JSON object with this exact structure:
{{
  "name": "extracted name or null",
  "address": "full address or null",
  "mobile": "phone number or null",
  "confidence": 0.0 to 1.0,
  "notes": "any relevant notes about extraction"
}}

---
MESSAGES TO PROCESS:
{message_text}
---

Return ONLY the JSON object, no other text."""


def coerce_confidence(value: Any) -> float:
    """Clamp a model-reported confidence into [0, 1]. Missing or garbage -> default."""
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence != confidence:  # NaN
        return DEFAULT_CONFIDENCE
    return min(max(confidence, 0.0), 1.0)


class GroqExtractionClient:
    """Contact extraction via Groq chat completions.

    Usage:
        client = GroqExtractionClient()  # reads GROQ_API_KEY from env
        response = client.extract("Rahul Sharma\\n9876543210", push_name="Rahul")
        print(response.data["name"], response.data["confidence"])
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str = DEFAULT_GROQ_MODEL,
        timeout_seconds: float = 30.0,
        temperature: float = 0.1,
        max_tokens: int = 1024,
    ) -> None:
        """Initialize the extraction client.

        The SDK client is created on first use so a process without a key
        can still start (every extraction then fails and is dead-lettered).

        Args:
            api_key: Groq API key. Defaults to GROQ_API_KEY env var.
            model: Model name.
            timeout_seconds: Per-call timeout.
            temperature: Sampling temperature.
            max_tokens: Completion token limit.
        """
        self._api_key = api_key or os.environ.get("GROQ_API_KEY")
        self.model = model
        self._timeout_seconds = timeout_seconds
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client: Groq | None = None

    def _get_client(self) -> Groq:
        if self._client is None:
            if not self._api_key:
                raise ExtractionError("GROQ_API_KEY is not set")
            self._client = Groq(
                api_key=self._api_key,
                timeout=self._timeout_seconds,
                max_retries=0,
            )
        return self._client

    def extract(self, combined_text: str, push_name: str) -> ExtractionResponse:
        """Run one extraction call.

        Args:
            combined_text: Newline-joined session text.
            push_name: Sender's profile name (a hint, not an answer).

        Returns:
            ExtractionResponse with the parsed JSON object.

        Raises:
            ExtractionError: On transport errors, timeouts, empty or non-JSON responses.
        """
        client = self._get_client()

        logger.info(
            "calling LLM for extraction",
            extra={
                "extra_fields": safe_log_context(
                    text_len=len(combined_text), model=self.model
                )
            },
        )

        start = time.monotonic()
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(combined_text, push_name)},
                ],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )
        except groq.APIError as e:
            raise ExtractionError(f"Groq API call failed: {e}") from e

        response_ms = int((time.monotonic() - start) * 1000)
        text = completion.choices[0].message.content if completion.choices else None
        if not text:
            raise ExtractionError("Empty response from LLM")

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"LLM response is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ExtractionError("LLM response is not a JSON object")

        logger.info(
            "LLM extraction successful",
            extra={
                "extra_fields": safe_log_context(
                    response_ms=response_ms,
                    has_name=bool(data.get("name")),
                    has_address=bool(data.get("address")),
                    has_mobile=bool(data.get("mobile")),
                )
            },
        )
        return ExtractionResponse(data=data, model=self.model, response_ms=response_ms)
