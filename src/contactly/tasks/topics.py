"""In-memory partitioned topics with consumer groups.

Semantics:
- A topic has a fixed number of partitions; a record's partition is a
  stable hash of its key, so records sharing a key keep their order.
- Each partition is an append-only log with bounded retention.
- A consumer group keeps one offset per partition and runs one thread per
  partition: serial within a partition, parallel across partitions.
- The offset advances only after the handler (or the error hook) returned,
  so a record is never skipped because its handler raised.
"""

from __future__ import annotations

import threading
import time
import zlib
from dataclasses import dataclass
from typing import Callable

from contactly.infra.time import epoch_ms
from contactly.observability.correlation import correlation_scope
from contactly.observability.logging import get_logger
from contactly.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_RETENTION = 10_000
POLL_INTERVAL_SECONDS = 0.2


@dataclass(frozen=True)
class TopicRecord:
    """One record in a partition log. `value` is the serialized envelope."""

    topic: str
    partition: int
    offset: int
    key: str | None
    value: str
    timestamp: int


RecordHandler = Callable[[TopicRecord], None]
ErrorHook = Callable[[TopicRecord, Exception], None]


class _PartitionLog:
    def __init__(self, topic: str, index: int, retention: int) -> None:
        self._topic = topic
        self._index = index
        self._retention = retention
        self._records: list[TopicRecord] = []
        self._base_offset = 0
        self._cond = threading.Condition()

    def append(self, key: str | None, value: str) -> TopicRecord:
        with self._cond:
            record = TopicRecord(
                topic=self._topic,
                partition=self._index,
                offset=self._base_offset + len(self._records),
                key=key,
                value=value,
                timestamp=epoch_ms(),
            )
            self._records.append(record)
            overflow = len(self._records) - self._retention
            if overflow > 0:
                del self._records[:overflow]
                self._base_offset += overflow
            self._cond.notify_all()
            return record

    def start_offset(self) -> int:
        with self._cond:
            return self._base_offset

    def end_offset(self) -> int:
        with self._cond:
            return self._base_offset + len(self._records)

    def read(self, offset: int, timeout: float) -> TopicRecord | None:
        """Return the record at offset (or the oldest retained one after it).

        Blocks up to timeout seconds for the record to be appended.
        """
        with self._cond:
            available = self._cond.wait_for(
                lambda: self._base_offset + len(self._records) > offset,
                timeout=timeout,
            )
            if not available:
                return None
            if offset < self._base_offset:
                logger.warning(
                    "retention trimmed unconsumed records, skipping ahead",
                    extra={
                        "extra_fields": safe_log_context(
                            topic=self._topic,
                            partition=self._index,
                            requested_offset=offset,
                            oldest_offset=self._base_offset,
                            skipped=self._base_offset - offset,
                        )
                    },
                )
            return self._records[max(offset, self._base_offset) - self._base_offset]

    def snapshot(self) -> list[TopicRecord]:
        with self._cond:
            return list(self._records)


class Topic:
    """A named set of ordered partition logs."""

    def __init__(self, name: str, partitions: int = 1, retention: int = DEFAULT_RETENTION) -> None:
        if partitions < 1:
            raise ValueError("partitions must be at least 1")
        self.name = name
        self.partitions = [_PartitionLog(name, i, retention) for i in range(partitions)]

    def partition_for(self, key: str | None) -> int:
        """Stable partition index for a key. Keyless records go to partition 0."""
        if key is None:
            return 0
        return zlib.crc32(key.encode()) % len(self.partitions)

    def append(self, value: str, key: str | None = None) -> TopicRecord:
        return self.partitions[self.partition_for(key)].append(key, value)

    def records(self) -> list[TopicRecord]:
        result: list[TopicRecord] = []
        for partition in self.partitions:
            result.extend(partition.snapshot())
        return result


class ConsumerGroup:
    """Consumes one topic with one worker thread per partition."""

    def __init__(
        self,
        topic: Topic,
        group_id: str,
        handler: RecordHandler,
        *,
        on_error: ErrorHook | None = None,
        from_beginning: bool = True,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.topic = topic
        self.group_id = group_id
        self._handler = handler
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._offsets = [
            p.start_offset() if from_beginning else p.end_offset() for p in topic.partitions
        ]
        self._in_flight = [False] * len(topic.partitions)
        self._state = threading.Condition()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        self._stopping.clear()
        for index in range(len(self.topic.partitions)):
            thread = threading.Thread(
                target=self._run,
                args=(index,),
                name=f"{self.topic.name}-{self.group_id}-p{index}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info(
            "consumer group started",
            extra={
                "extra_fields": safe_log_context(
                    topic=self.topic.name,
                    group_id=self.group_id,
                    partitions=len(self.topic.partitions),
                )
            },
        )

    def _run(self, index: int) -> None:
        partition = self.topic.partitions[index]
        while not self._stopping.is_set():
            with self._state:
                offset = self._offsets[index]
            record = partition.read(offset, timeout=self._poll_interval)
            if record is None:
                continue
            with self._state:
                self._in_flight[index] = True
            try:
                self._dispatch(record)
            finally:
                with self._state:
                    self._offsets[index] = record.offset + 1
                    self._in_flight[index] = False
                    self._state.notify_all()

    def _dispatch(self, record: TopicRecord) -> None:
        with correlation_scope(f"{record.topic}:{record.partition}:{record.offset}"):
            try:
                self._handler(record)
            except Exception as e:
                logger.exception(
                    "error handling topic record",
                    extra={
                        "extra_fields": safe_log_context(
                            topic=record.topic,
                            partition=record.partition,
                            offset=record.offset,
                            error_type=type(e).__name__,
                        )
                    },
                )
                if self._on_error is None:
                    return
                try:
                    self._on_error(record, e)
                except Exception:
                    logger.exception(
                        "error hook failed",
                        extra={
                            "extra_fields": safe_log_context(
                                topic=record.topic, offset=record.offset
                            )
                        },
                    )

    def lag(self) -> int:
        with self._state:
            return sum(
                max(p.end_offset() - offset, 0)
                for p, offset in zip(self.topic.partitions, self._offsets)
            )

    def is_idle(self) -> bool:
        with self._state:
            return self._idle_locked()

    def wait_until_idle(self, timeout: float) -> bool:
        """Block until every partition is drained. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._state:
            while not self._idle_locked():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._state.wait(min(remaining, self._poll_interval))
        return True

    def _idle_locked(self) -> bool:
        return not any(self._in_flight) and all(
            offset >= p.end_offset() for p, offset in zip(self.topic.partitions, self._offsets)
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


class InMemoryBroker:
    """Process-local topic registry."""

    def __init__(self, retention: int = DEFAULT_RETENTION) -> None:
        self._retention = retention
        self._topics: dict[str, Topic] = {}
        self._groups: list[ConsumerGroup] = []
        self._lock = threading.Lock()

    def create_topic(self, name: str, partitions: int = 1) -> Topic:
        """Create a topic, or return the existing one with that name."""
        with self._lock:
            topic = self._topics.get(name)
            if topic is None:
                topic = Topic(name, partitions, self._retention)
                self._topics[name] = topic
            return topic

    def topic(self, name: str) -> Topic:
        with self._lock:
            return self._topics[name]

    def publish(self, topic: str, value: str, key: str | None = None) -> TopicRecord:
        """Append a serialized value. Unknown topics are created with one partition."""
        record = self.create_topic(topic).append(value, key)
        logger.debug(
            "record appended",
            extra={
                "extra_fields": safe_log_context(
                    topic=topic, partition=record.partition, offset=record.offset
                )
            },
        )
        return record

    def subscribe(
        self,
        topic: str,
        group_id: str,
        handler: RecordHandler,
        *,
        on_error: ErrorHook | None = None,
        from_beginning: bool = True,
    ) -> ConsumerGroup:
        """Register a consumer group. Call start() on the result to begin consuming."""
        group = ConsumerGroup(
            self.create_topic(topic),
            group_id,
            handler,
            on_error=on_error,
            from_beginning=from_beginning,
        )
        with self._lock:
            self._groups.append(group)
        return group

    def records(self, topic: str) -> list[TopicRecord]:
        """Retained records of a topic, for inspection (e.g. dead-letter review)."""
        with self._lock:
            existing = self._topics.get(topic)
        return existing.records() if existing is not None else []

    def wait_until_idle(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._lock:
            groups = list(self._groups)
        for group in groups:
            if not group.wait_until_idle(max(deadline - time.monotonic(), 0.0)):
                return False
        return True

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            groups = list(self._groups)
            self._groups.clear()
        for group in groups:
            group.stop(timeout)
