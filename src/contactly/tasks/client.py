"""Queue client with idempotent publish.

Provides backends selectable via QUEUE_BACKEND env var:
- inline (default): appends to the process-local InMemoryBroker
- http: forwards envelopes to the worker process via HTTP POST
"""

from __future__ import annotations

import os
import uuid
from typing import Any

from contactly.correlation.session_store import BoundedIdCache
from contactly.observability.logging import get_logger
from contactly.observability.redaction import safe_log_context
from contactly.tasks.contracts import TopicEnvelopeV1
from contactly.tasks.topics import InMemoryBroker

logger = get_logger(__name__)

QUEUE_BACKEND = os.environ.get("QUEUE_BACKEND", "inline")

# How many recent record_ids are remembered for publish dedupe
PUBLISH_DEDUPE_WINDOW = 10_000


class QueueClient:
    """Queue client with idempotent publish by record_id.

    Backend selection via QUEUE_BACKEND env var (or the `backend` argument):
    - "inline" (default): records land in the local broker and are consumed
      by consumer groups in this process
    - "http": records are POSTed to the worker, which appends them to its
      own local broker (see the /tasks/topics route)

    Tracks record_ids to ensure idempotency (same record_id = no-op). The
    window is bounded; a very old record_id may be published again.
    """

    def __init__(
        self,
        backend: str | None = None,
        broker: InMemoryBroker | None = None,
        dedupe_window: int = PUBLISH_DEDUPE_WINDOW,
    ) -> None:
        self._backend = backend or QUEUE_BACKEND
        if self._backend not in ("inline", "http"):
            raise ValueError(f"Unknown QUEUE_BACKEND: {self._backend}")
        self._broker = broker or InMemoryBroker()
        self._published_ids = BoundedIdCache(dedupe_window)

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def broker(self) -> InMemoryBroker:
        return self._broker

    def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        key: str | None = None,
        record_id: str | None = None,
        correlation_id: str | None = None,
    ) -> bool:
        """Publish a payload to a topic.

        Idempotent by record_id: if the same record_id was already
        published, returns False without publishing again.

        Args:
            topic: Destination topic.
            payload: Record body (JSON-serializable).
            key: Partition key; records sharing a key keep their order.
            record_id: Unique identifier for idempotency. Generated if None.
            correlation_id: Optional correlation ID for tracing.

        Returns:
            True if the record was published.
            False if no-op (record_id already seen) or the http backend failed.
        """
        envelope = TopicEnvelopeV1(
            topic=topic,
            key=key,
            record_id=record_id or str(uuid.uuid4()),
            payload=payload,
        )
        return self.publish_envelope(envelope, correlation_id=correlation_id)

    def publish_envelope(
        self,
        envelope: TopicEnvelopeV1,
        correlation_id: str | None = None,
    ) -> bool:
        """Publish an already-built envelope (same idempotency rules as publish)."""
        if not self._published_ids.add(envelope.record_id):
            logger.info(
                "duplicate record_id ignored",
                extra={
                    "extra_fields": safe_log_context(
                        topic=envelope.topic, record_id=envelope.record_id
                    )
                },
            )
            return False

        if self._backend == "inline":
            self._broker.publish(envelope.topic, envelope.to_json(), key=envelope.key)
            return True

        from contactly.tasks.http_backend import publish_http

        ok = publish_http(envelope, correlation_id)
        if not ok:
            # Allow a later retry with the same record_id
            self._published_ids.discard(envelope.record_id)
        return ok

    def was_published(self, record_id: str) -> bool:
        """Check if record_id was already published.

        Args:
            record_id: Record identifier to check.

        Returns:
            True if record_id was seen, False otherwise.
        """
        return record_id in self._published_ids

    def clear(self) -> None:
        """Clear remembered record_ids (useful for testing)."""
        self._published_ids.clear()
