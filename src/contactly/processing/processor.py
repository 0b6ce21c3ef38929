"""Processing stage: finalized session -> structured contact.

Flow per session:
1. Extraction call, up to `max_attempts` tries with exponential backoff
   (2s, 4s, ... between tries). Each try is an independent remote call.
2. Phone normalization of the extracted mobile (fail open to the original).
3. Status: failed / low_confidence / processed.
4. Persist, publish to the parsed-contacts topic, broadcast.

When every attempt fails, a `failed` result is persisted, the original
session record goes to the dead-letter topic, and ProcessingFailedError is
raised to the consumer loop, which must treat the item as already routed.

Security: NEVER log message text, names or numbers.
"""

from __future__ import annotations

import re
import time
import uuid
from typing import Any, Callable, Protocol

from contactly.config import TopicNames
from contactly.domain.results import (
    DeadLetterRecord,
    ExtractedContact,
    ProcessingResult,
    ProcessingStatus,
    classify_status,
)
from contactly.domain.sessions import FinalizedSessionRecord
from contactly.extraction.groq_client import (
    ContactExtractor,
    ExtractionError,
    ExtractionResponse,
    coerce_confidence,
)
from contactly.infra.contact_store import ContactStore
from contactly.infra.time import epoch_ms
from contactly.observability.logging import get_logger
from contactly.observability.redaction import hash_identifier, safe_log_context
from contactly.tasks.client import QueueClient

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 2.0

# Plausible phone length after normalization (digits)
_PHONE_MIN_DIGITS = 10
_PHONE_MAX_DIGITS = 15
_NON_DIGITS = re.compile(r"\D")


class ProcessingFailedError(Exception):
    """Raised after retries are exhausted and the failure has been routed."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id


class Broadcaster(Protocol):
    """Live-update channel towards dashboards."""

    def broadcast_contact(self, result: ProcessingResult, contact_id: int | None) -> None:
        ...

    def broadcast_status(self, message: str, level: str) -> None:
        ...


class LoggingBroadcaster:
    """Broadcaster that only logs (no live-update transport attached)."""

    def broadcast_contact(self, result: ProcessingResult, contact_id: int | None) -> None:
        logger.debug(
            "broadcast contact",
            extra={
                "extra_fields": safe_log_context(
                    contact_id=contact_id, status=result.status.value
                )
            },
        )

    def broadcast_status(self, message: str, level: str) -> None:
        logger.debug(
            "broadcast status",
            extra={"extra_fields": safe_log_context(level=level, message=message)},
        )


def normalize_phone_number(phone: Any) -> str | None:
    """Normalize an extracted phone number to bare digits.

    Drops every non-digit (spaces, dashes, brackets, a leading +). If the
    result is not 10-15 digits long the original value is returned unchanged.

    Examples:
        "+91 98765 43210" -> "919876543210"
        "12345" -> "12345"
    """
    if phone is None or phone == "":
        return None
    original = str(phone)
    digits = _NON_DIGITS.sub("", original)
    if not _PHONE_MIN_DIGITS <= len(digits) <= _PHONE_MAX_DIGITS:
        return original
    return digits


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class SessionProcessor:
    """Turns finalized sessions into persisted, published contact results."""

    def __init__(
        self,
        *,
        extractor: ContactExtractor,
        store: ContactStore,
        queue: QueueClient,
        topics: TopicNames | None = None,
        broadcaster: Broadcaster | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._extractor = extractor
        self._store = store
        self._queue = queue
        self._topics = topics or TopicNames()
        self._broadcaster = broadcaster or LoggingBroadcaster()
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._sleep = sleep
        self._clock = clock

    def process(self, record: FinalizedSessionRecord) -> ProcessingResult:
        """Process one finalized session.

        Returns:
            The persisted ProcessingResult (processed or low_confidence).

        Raises:
            ProcessingFailedError: If extraction failed on every attempt. The
                failed result is already persisted and the session record
                already dead-lettered when this is raised.
        """
        log_ctx = safe_log_context(
            session_id_hash=hash_identifier(record.session_id),
            sender=hash_identifier(record.sender_id),
            message_count=record.message_count,
        )
        logger.info("processing session", extra={"extra_fields": log_ctx})

        try:
            response = self._extract_with_retry(record)
        except Exception as e:
            self._fail(record, e)
            raise ProcessingFailedError(record.session_id, str(e)) from e

        result = self._build_result(record, response)
        contact_id = self._store.save_result(result)
        logger.info(
            "contact saved",
            extra={"extra_fields": safe_log_context(**log_ctx, contact_id=contact_id)},
        )

        self._queue.publish(
            self._topics.parsed_contacts,
            result.to_dict(),
            key=result.sender_number,
            record_id=f"result:{result.session_id}",
        )
        self._broadcaster.broadcast_contact(result, contact_id)

        logger.info(
            "session processing complete",
            extra={
                "extra_fields": safe_log_context(
                    **log_ctx,
                    status=result.status.value,
                    confidence=result.extracted.confidence,
                    has_name=result.extracted.name is not None,
                    has_mobile=result.extracted.mobile is not None,
                )
            },
        )
        return result

    def _extract_with_retry(self, record: FinalizedSessionRecord) -> ExtractionResponse:
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return self._extractor.extract(record.combined_text, record.push_name)
            except Exception as e:
                last_error = e
                logger.warning(
                    "extraction attempt failed",
                    extra={
                        "extra_fields": safe_log_context(
                            session_id_hash=hash_identifier(record.session_id),
                            attempt=attempt,
                            error_type=type(e).__name__,
                        )
                    },
                )
                if attempt < self._max_attempts:
                    self._sleep(self._backoff_base**attempt)

        logger.error(
            "extraction failed after all retries",
            extra={
                "extra_fields": safe_log_context(
                    session_id_hash=hash_identifier(record.session_id),
                    attempts=self._max_attempts,
                )
            },
        )
        if last_error is None:
            raise ExtractionError("no extraction attempt was made")
        raise last_error

    def _build_result(
        self, record: FinalizedSessionRecord, response: ExtractionResponse
    ) -> ProcessingResult:
        data = response.data
        confidence = coerce_confidence(data.get("confidence"))
        extracted = ExtractedContact(
            name=_optional_text(data.get("name")),
            address=_optional_text(data.get("address")),
            mobile=normalize_phone_number(_optional_text(data.get("mobile"))),
            confidence=confidence,
            notes=_optional_text(data.get("notes")),
        )
        return ProcessingResult(
            session_id=record.session_id,
            sender_number=record.sender_number,
            push_name=record.push_name,
            extracted=extracted,
            raw_messages=record.messages,
            combined_text=record.combined_text,
            processed_at=self._clock(),
            status=classify_status(confidence),
            extraction_model=response.model,
            extraction_ms=response.response_ms,
        )

    def _fail(self, record: FinalizedSessionRecord, error: Exception) -> None:
        message = str(error) or type(error).__name__
        failed = ProcessingResult(
            session_id=record.session_id,
            sender_number=record.sender_number,
            push_name=record.push_name,
            extracted=ExtractedContact(
                confidence=0.0,
                notes=f"Extraction failed: {message}",
            ),
            raw_messages=record.messages,
            combined_text=record.combined_text,
            processed_at=self._clock(),
            status=ProcessingStatus.FAILED,
            error=message,
        )
        try:
            self._store.save_result(failed)
        except Exception:
            logger.exception(
                "failed to persist failed result",
                extra={
                    "extra_fields": safe_log_context(
                        session_id_hash=hash_identifier(record.session_id)
                    )
                },
            )

        self.route_dead_letter(
            record.to_dict(),
            error,
            context={"sessionId": record.session_id, "stage": "extraction"},
        )
        self._broadcaster.broadcast_status(
            "Failed to process a session; routed to dead-letter", "error"
        )

    def route_dead_letter(
        self,
        payload: Any,
        error: Exception,
        *,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """Publish a dead-letter entry. Best effort: failures are logged, never raised.

        Returns:
            True if the entry was published.
        """
        entry = DeadLetterRecord(
            original_payload=payload,
            error_message=str(error) or type(error).__name__,
            timestamp=self._clock(),
            error_type=type(error).__name__,
            context=context or {},
        )
        try:
            published = self._queue.publish(
                self._topics.dead_letter,
                entry.to_dict(),
                record_id=f"dlq:{uuid.uuid4()}",
            )
        except Exception:
            logger.exception("failed to send to dead letter queue")
            return False
        if published:
            logger.warning(
                "message sent to dead letter queue",
                extra={"extra_fields": safe_log_context(error_type=entry.error_type)},
            )
        else:
            logger.error("dead letter publish was not accepted")
        return published
