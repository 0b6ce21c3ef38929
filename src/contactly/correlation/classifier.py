"""Deterministic text classification for inbound messages.

NO LLM. Uses regex and heuristics.
Security: NEVER log raw text (PII).
"""

import re

from contactly.domain.sessions import Slot

# Messages at least this long are never treated as noise
_NOISE_MAX_LENGTH = 15

# Greetings and filler in English, Hindi and Gujarati (romanized)
_NOISE_PATTERNS = [
    re.compile(r"\b(hi|hello|hey|gm|morning|thx|thanks)\b", re.IGNORECASE),
    re.compile(r"\b(namaste|pranam|shubh prabhat|kaise ho)\b", re.IGNORECASE),
    re.compile(r"\b(jay mataji|ram ram|sakti|om)\b", re.IGNORECASE),
    re.compile(r"\b(suno|bhai|ji|ok|okay|tike)\b", re.IGNORECASE),
]

# Indian mobile: 10 digits starting 6-9, optional +91 or 0 prefix
_MOBILE_PATTERN = re.compile(r"(\+91|0)?[6-9]\d{9}")

# Two or three capitalized words and nothing else
_NAME_PATTERN = re.compile(r"^[A-Z][a-z]+(\s[A-Z][a-z]+){1,2}$")

_ADDRESS_KEYWORDS = re.compile(
    r"\b(road|st|street|apt|apartment|flat|city|dist|nagar|society|colony|landmark|near|opposite)\b",
    re.IGNORECASE,
)

# Free text longer than this many tokens is taken as an address
_ADDRESS_MIN_TOKENS = 5


def is_noise(text: str | None) -> bool:
    """Check if a message is only a greeting or filler.

    Args:
        text: Raw message text.

    Returns:
        True if the text is empty, shorter than 2 characters, or short and
        matching a greeting pattern.
    """
    if not text or len(text) < 2:
        return True

    clean = text.strip().lower()
    if len(clean) < _NOISE_MAX_LENGTH:
        return any(pattern.search(clean) for pattern in _NOISE_PATTERNS)
    return False


def identify_slot(text: str) -> Slot:
    """Identify which slot a message most likely fills.

    Checked in priority order: mobile, name, address. Exactly one label.
    """
    if _MOBILE_PATTERN.search(text):
        return Slot.MOBILE

    if _NAME_PATTERN.match(text.strip()):
        return Slot.NAME

    if _ADDRESS_KEYWORDS.search(text) or len(text.split()) > _ADDRESS_MIN_TOKENS:
        return Slot.ADDRESS

    return Slot.UNKNOWN
