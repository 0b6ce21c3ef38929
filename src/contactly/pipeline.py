"""Wiring of the ingest -> correlate -> queue -> process pipeline.

One Pipeline per process. Components are built from Settings and passed to
each other explicitly; tests replace any of them through the constructor.

Roles:
- public: webhook intake and correlation. With the inline backend it also
  runs the consumers; with the http backend finalized sessions are
  forwarded to the worker.
- worker: receives forwarded envelopes and runs the consumers.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from contactly.config import Settings, TopicNames
from contactly.correlation.correlator import SessionCorrelator
from contactly.correlation.timers import Scheduler
from contactly.domain.sessions import FinalizedSessionRecord, Message
from contactly.extraction.groq_client import ContactExtractor, GroqExtractionClient
from contactly.infra.contact_store import (
    ContactStore,
    InMemoryContactStore,
    PostgresContactStore,
)
from contactly.observability.logging import get_logger
from contactly.observability.redaction import hash_identifier, safe_log_context
from contactly.processing.processor import (
    Broadcaster,
    ProcessingFailedError,
    SessionProcessor,
)
from contactly.tasks.client import QueueClient
from contactly.tasks.contracts import TopicEnvelopeV1
from contactly.tasks.topics import ConsumerGroup, TopicRecord
from contactly.whatsapp.models import Revocation

logger = get_logger(__name__)

PROCESSOR_GROUP_ID = "contact-processor"
DEFAULT_DRAIN_TIMEOUT_SECONDS = 30.0


class QueueingListener:
    """Correlator listener that publishes finalized sessions to the raw topic.

    Records are keyed by sender number so one sender's sessions keep their
    order; the session id doubles as record_id, so a session is queued once.
    """

    def __init__(self, queue: QueueClient, topic: str) -> None:
        self._queue = queue
        self._topic = topic

    def on_session_started(self, session_id: str, sender_number: str) -> None:
        logger.debug(
            "session started",
            extra={
                "extra_fields": safe_log_context(
                    session_id_hash=hash_identifier(session_id)
                )
            },
        )

    def on_session_finalized(self, record: FinalizedSessionRecord) -> None:
        published = self._queue.publish(
            self._topic,
            record.to_dict(),
            key=record.sender_number,
            record_id=record.session_id,
        )
        if not published:
            logger.error(
                "finalized session was not queued",
                extra={
                    "extra_fields": safe_log_context(
                        session_id_hash=hash_identifier(record.session_id),
                        topic=self._topic,
                    )
                },
            )


class Pipeline:
    """Holds every component of one process and their lifecycle."""

    def __init__(
        self,
        settings: Settings,
        *,
        role: str = "public",
        queue: QueueClient | None = None,
        store: ContactStore | None = None,
        extractor: ContactExtractor | None = None,
        broadcaster: Broadcaster | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.role = role
        topics = settings.topics

        if queue is None:
            # The worker is the end of the http hop: it always appends locally.
            backend = "inline" if role == "worker" else settings.queue_backend
            queue = QueueClient(backend=backend)
        self.queue = queue

        broker = queue.broker
        broker.create_topic(topics.raw_sessions, settings.topic_partitions)
        broker.create_topic(topics.parsed_contacts, settings.topic_partitions)
        broker.create_topic(topics.dead_letter, 1)

        if store is None:
            if settings.database_url:
                store = PostgresContactStore(settings.database_url)
            else:
                logger.warning("DATABASE_URL not set - contacts are kept in memory only")
                store = InMemoryContactStore()
        self.store = store

        if extractor is None:
            extractor = GroqExtractionClient(
                settings.groq_api_key,
                model=settings.groq_model,
                timeout_seconds=settings.extraction_timeout_seconds,
            )
        self.extractor = extractor

        clock_kwargs: dict[str, Any] = {"clock": clock} if clock is not None else {}
        self.processor = SessionProcessor(
            extractor=extractor,
            store=store,
            queue=queue,
            topics=topics,
            broadcaster=broadcaster,
            max_attempts=settings.extraction_max_attempts,
            sleep=sleep,
            **clock_kwargs,
        )
        self.correlator = SessionCorrelator.from_settings(
            settings,
            scheduler=scheduler,
            listener=QueueingListener(queue, topics.raw_sessions),
            **clock_kwargs,
        )
        self._consumer: ConsumerGroup | None = None

    @property
    def topics(self) -> TopicNames:
        return self.settings.topics

    @property
    def runs_consumers(self) -> bool:
        """Whether this process consumes the raw-sessions topic."""
        return self.role == "worker" or self.queue.backend == "inline"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self.runs_consumers or self._consumer is not None:
            return
        self._consumer = self.queue.broker.subscribe(
            self.topics.raw_sessions,
            PROCESSOR_GROUP_ID,
            self.handle_session_record,
            on_error=self.handle_consume_error,
        )
        self._consumer.start()
        logger.info(
            "pipeline started",
            extra={
                "extra_fields": safe_log_context(
                    role=self.role, queue_backend=self.queue.backend
                )
            },
        )

    def shutdown(self, timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS) -> None:
        """Flush open sessions, drain the queue, then stop consumers."""
        flushed = self.correlator.flush_all()
        drained = True
        if self._consumer is not None:
            drained = self.queue.broker.wait_until_idle(timeout)
        self.queue.broker.close()
        self._consumer = None
        self.correlator.close()
        logger.info(
            "pipeline stopped",
            extra={
                "extra_fields": safe_log_context(flushed=flushed, drained=drained)
            },
        )

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def ingest(self, message: Message) -> bool:
        """Record an inbound message and hand it to the correlator.

        Returns:
            True if the correlator incorporated the message.
        """
        try:
            self.store.save_raw_message(message)
        except Exception:
            logger.exception(
                "failed to store raw message",
                extra={"extra_fields": safe_log_context(message_id=message.id)},
            )
        return self.correlator.add_message(message)

    def revoke(self, revocation: Revocation) -> bool:
        return self.correlator.remove_message(revocation.sender_id, revocation.message_id)

    def accept_envelope(self, envelope: TopicEnvelopeV1) -> bool:
        """Append a forwarded envelope to the local topic.

        Returns:
            False if the record_id was already accepted.
        """
        return self.queue.publish_envelope(envelope)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def handle_session_record(self, record: TopicRecord) -> None:
        envelope = TopicEnvelopeV1.from_json(record.value)
        session = FinalizedSessionRecord.from_dict(envelope.payload)
        self.processor.process(session)

    def handle_consume_error(self, record: TopicRecord, error: Exception) -> None:
        if isinstance(error, ProcessingFailedError):
            # Already persisted as failed and dead-lettered by the processor
            return
        self.processor.route_dead_letter(
            record.value,
            error,
            context={
                "topic": record.topic,
                "partition": record.partition,
                "offset": record.offset,
                "stage": "consume",
            },
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        stats = self.correlator.get_stats()
        consumer = self._consumer
        return {
            "status": "ok",
            "role": self.role,
            "queueBackend": self.queue.backend,
            "correlator": stats,
            "consumerLag": consumer.lag() if consumer is not None else None,
        }

    def dead_letters(self) -> list[dict[str, Any]]:
        """Retained dead-letter entries, oldest first."""
        entries = []
        for record in self.queue.broker.records(self.topics.dead_letter):
            entries.append(TopicEnvelopeV1.from_json(record.value).payload)
        return entries
