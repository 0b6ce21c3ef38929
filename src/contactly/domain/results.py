"""Processing result and dead-letter models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from contactly.domain.sessions import Message

# Results below this confidence are flagged for review
LOW_CONFIDENCE_THRESHOLD = 0.3


class ProcessingStatus(str, Enum):
    PROCESSED = "processed"
    LOW_CONFIDENCE = "low_confidence"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractedContact:
    """Contact fields returned by the extraction service."""

    name: str | None = None
    address: str | None = None
    mobile: str | None = None
    confidence: float = 0.0
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "mobile": self.mobile,
            "confidence": self.confidence,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ProcessingResult:
    session_id: str
    sender_number: str
    push_name: str
    extracted: ExtractedContact
    raw_messages: tuple[Message, ...]
    combined_text: str
    processed_at: int
    status: ProcessingStatus
    error: str | None = None
    extraction_model: str | None = None
    extraction_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "senderNumber": self.sender_number,
            "pushName": self.push_name,
            "extracted": self.extracted.to_dict(),
            "rawMessages": [m.to_dict() for m in self.raw_messages],
            "combinedText": self.combined_text,
            "processedAt": self.processed_at,
            "status": self.status.value,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.extraction_model is not None:
            data["extractionModel"] = self.extraction_model
            data["extractionMs"] = self.extraction_ms
        return data


def classify_status(confidence: float) -> ProcessingStatus:
    """Status of a successful extraction. The threshold itself counts as processed."""
    if confidence < LOW_CONFIDENCE_THRESHOLD:
        return ProcessingStatus.LOW_CONFIDENCE
    return ProcessingStatus.PROCESSED


@dataclass(frozen=True)
class DeadLetterRecord:
    """Item that failed terminal processing, kept for inspection or replay."""

    original_payload: Any
    error_message: str
    timestamp: int
    error_type: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalMessage": self.original_payload,
            "error": self.error_message,
            "errorType": self.error_type,
            "timestamp": self.timestamp,
            "context": dict(self.context),
        }
