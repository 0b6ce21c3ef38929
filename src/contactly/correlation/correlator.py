"""Session correlator: groups messages from one sender into sessions.

A person often sends their details across several messages (name in one,
number in the next, address after that). The correlator buffers messages per
sender and finalizes the session when one of these happens:

- the sender's timeout fires (adaptive: shorter once slots are filled)
- the session reaches the message limit
- a message fills a slot the session already has (a new person writing
  through the same number, e.g. an aggregator forwarding several leads)
- shutdown flush

Concurrency: every mutation of a sender's session runs under that sender's
lock (striped RLocks), so timer threads and request threads never interleave
on the same session. Each sender has at most one pending timer; arming a new
one cancels the previous one, and a timer that fires after being superseded
is ignored.

Listener callbacks are collected while the lock is held and run after it is
released, in the order the events happened.

Security: NEVER log message text or raw sender numbers.
"""

from __future__ import annotations

import threading
import zlib
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Protocol

from contactly.config import Settings
from contactly.correlation.classifier import identify_slot, is_noise
from contactly.correlation.session_store import SessionStore
from contactly.correlation.timers import Scheduler, ThreadingScheduler, TimerHandle
from contactly.domain.sessions import (
    FinalizedSessionRecord,
    Message,
    Session,
    Slot,
    SlotSet,
    session_id_for,
)
from contactly.infra.time import epoch_ms
from contactly.observability.correlation import correlation_scope
from contactly.observability.logging import get_logger
from contactly.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)

# Adaptive timeouts (seconds)
COMPLETE_TIMEOUT_SECONDS = 10
PARTIAL_TIMEOUT_SECONDS = 30

_LOCK_STRIPES = 64

_Events = list[Callable[[], None]]


class CorrelatorListener(Protocol):
    """Lifecycle callbacks exposed by the correlator."""

    def on_session_started(self, session_id: str, sender_number: str) -> None:
        ...

    def on_session_finalized(self, record: FinalizedSessionRecord) -> None:
        ...


class NullListener:
    """Listener that ignores every event."""

    def on_session_started(self, session_id: str, sender_number: str) -> None:
        pass

    def on_session_finalized(self, record: FinalizedSessionRecord) -> None:
        pass


@dataclass(frozen=True)
class _PendingTimer:
    token: object
    handle: TimerHandle


def adaptive_timeout_seconds(slots: SlotSet, default_seconds: float) -> float:
    """Timeout for a session given the slots filled so far."""
    if slots.is_filled(Slot.NAME) and slots.is_filled(Slot.MOBILE):
        return COMPLETE_TIMEOUT_SECONDS
    if slots.filled_count() >= 1:
        return PARTIAL_TIMEOUT_SECONDS
    return default_seconds


class SessionCorrelator:
    """Per-sender session state machine.

    States per sender: absent -> accumulating -> finalizing -> absent.
    """

    def __init__(
        self,
        *,
        store: SessionStore | None = None,
        scheduler: Scheduler | None = None,
        listener: CorrelatorListener | None = None,
        timeout_seconds: float = 120,
        max_messages: int = 10,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self._store = store or SessionStore()
        self._scheduler = scheduler or ThreadingScheduler()
        self._listener = listener or NullListener()
        self._timeout_seconds = timeout_seconds
        self._max_messages = max_messages
        self._clock = clock
        self._timers: dict[str, _PendingTimer] = {}
        self._locks = [threading.RLock() for _ in range(_LOCK_STRIPES)]

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "SessionCorrelator":
        return cls(
            timeout_seconds=settings.correlation_timeout_seconds,
            max_messages=settings.max_messages_per_session,
            **kwargs,
        )

    @property
    def store(self) -> SessionStore:
        return self._store

    def _lock_for(self, sender_id: str) -> threading.RLock:
        return self._locks[zlib.crc32(sender_id.encode()) % _LOCK_STRIPES]

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def add_message(self, message: Message) -> bool:
        """Add an inbound message to its sender's session.

        Args:
            message: Normalized inbound message.

        Returns:
            True if the message was incorporated into a session, False if it
            was dropped as a duplicate or as noise.
        """
        sender_hash = hash_identifier(message.sender_id)

        if not self._store.seen_messages.add(message.id):
            logger.debug(
                "skipping duplicate message",
                extra={"extra_fields": safe_log_context(message_id=message.id)},
            )
            return False

        if is_noise(message.text):
            logger.info(
                "ignoring noise/greeting message",
                extra={
                    "extra_fields": safe_log_context(
                        sender=sender_hash, text_len=len(message.text or "")
                    )
                },
            )
            return False

        slot = identify_slot(message.text)
        events: _Events = []

        with self._lock_for(message.sender_id):
            session = self._store.get(message.sender_id)

            if session is not None and slot is not Slot.UNKNOWN and session.slots.is_filled(slot):
                logger.info(
                    "slot collision detected, finalizing previous session",
                    extra={
                        "extra_fields": safe_log_context(
                            sender=sender_hash,
                            slot=slot.value,
                            session_id=session.session_id,
                        )
                    },
                )
                self._finalize_locked(message.sender_id, events, reason="slot_collision")
                session = None

            if session is None:
                session = self._start_session(message, events)

            session.messages.append(message)
            session.last_message_at = self._clock()
            session.slots.fill(slot, message.text)

            logger.debug(
                "message added to session",
                extra={
                    "extra_fields": safe_log_context(
                        sender=sender_hash,
                        message_count=len(session.messages),
                        slot=slot.value,
                    )
                },
            )

            timeout = adaptive_timeout_seconds(session.slots, self._timeout_seconds)
            self._arm_timer(message.sender_id, timeout)

            if len(session.messages) >= self._max_messages:
                logger.info(
                    "message limit reached, finalizing session",
                    extra={
                        "extra_fields": safe_log_context(
                            sender=sender_hash, message_count=len(session.messages)
                        )
                    },
                )
                self._finalize_locked(message.sender_id, events, reason="message_limit")

        self._dispatch(events)
        return True

    def _start_session(self, message: Message, events: _Events) -> Session:
        started_at = self._clock()
        # Two sessions of one sender started in the same millisecond would
        # share an id and the second would be swallowed by the finalize guard.
        while session_id_for(message.sender_id, started_at) in self._store.finalized_sessions:
            started_at += 1

        session = Session(
            sender_id=message.sender_id,
            sender_number=message.sender_number,
            push_name=message.push_name,
            started_at=started_at,
            last_message_at=started_at,
        )
        self._store.put(session)

        logger.info(
            "new message session started",
            extra={
                "extra_fields": safe_log_context(
                    sender=hash_identifier(message.sender_id),
                    session_id_hash=hash_identifier(session.session_id),
                )
            },
        )
        events.append(
            partial(self._notify_started, session.session_id, session.sender_number)
        )
        return session

    def remove_message(self, sender_id: str, message_id: str) -> bool:
        """Remove a revoked message from the sender's active session.

        Slot values are not recomputed from the remaining messages; once
        observed, a slot stays filled for the life of the session.

        Returns:
            True if a buffered message was removed.
        """
        with self._lock_for(sender_id):
            session = self._store.get(sender_id)
            if session is None:
                return False

            remaining = [m for m in session.messages if m.id != message_id]
            if len(remaining) == len(session.messages):
                return False

            session.messages = remaining
            logger.info(
                "message removed from buffer (revoked)",
                extra={
                    "extra_fields": safe_log_context(
                        sender=hash_identifier(sender_id),
                        message_id=message_id,
                        remaining=len(remaining),
                    )
                },
            )

            if not remaining:
                self._store.delete(sender_id)
                self._cancel_timer(sender_id)
            return True

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm_timer(self, sender_id: str, delay_seconds: float) -> None:
        self._cancel_timer(sender_id)
        token = object()
        handle = self._scheduler.call_later(
            delay_seconds, lambda: self._on_timeout(sender_id, token)
        )
        self._timers[sender_id] = _PendingTimer(token=token, handle=handle)

    def _cancel_timer(self, sender_id: str) -> None:
        pending = self._timers.pop(sender_id, None)
        if pending is not None:
            pending.handle.cancel()

    def has_pending_timer(self, sender_id: str) -> bool:
        return sender_id in self._timers

    def _on_timeout(self, sender_id: str, token: object) -> None:
        with correlation_scope(None):
            events: _Events = []
            try:
                with self._lock_for(sender_id):
                    pending = self._timers.get(sender_id)
                    if pending is None or pending.token is not token:
                        logger.debug(
                            "stale session timer ignored",
                            extra={"extra_fields": safe_log_context(sender=hash_identifier(sender_id))},
                        )
                        return
                    logger.info(
                        "session timeout reached, finalizing",
                        extra={"extra_fields": safe_log_context(sender=hash_identifier(sender_id))},
                    )
                    self._finalize_locked(sender_id, events, reason="timeout")
                self._dispatch(events)
            except Exception:
                logger.exception(
                    "session timeout handling failed",
                    extra={"extra_fields": safe_log_context(sender=hash_identifier(sender_id))},
                )

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def finalize(self, sender_id: str) -> FinalizedSessionRecord | None:
        """Finalize the sender's session now.

        Returns:
            The emitted record, or None if there was nothing to emit.
        """
        events: _Events = []
        with self._lock_for(sender_id):
            record = self._finalize_locked(sender_id, events, reason="explicit")
        self._dispatch(events)
        return record

    def _finalize_locked(
        self, sender_id: str, events: _Events, *, reason: str
    ) -> FinalizedSessionRecord | None:
        """Close the sender's session and queue its finalized event.

        Caller holds the sender's lock and dispatches `events` once released.
        """
        session = self._store.get(sender_id)
        if session is None or not session.messages:
            logger.debug(
                "no messages to finalize",
                extra={"extra_fields": safe_log_context(sender=hash_identifier(sender_id))},
            )
            return None

        session_id = session.session_id
        if not self._store.finalized_sessions.add(session_id):
            logger.debug(
                "session already finalized, dropping",
                extra={"extra_fields": safe_log_context(session_id_hash=hash_identifier(session_id))},
            )
            self._store.delete(sender_id)
            self._cancel_timer(sender_id)
            return None

        self._cancel_timer(sender_id)
        record = FinalizedSessionRecord.from_session(session, completed_at=self._clock())

        logger.info(
            "session completed, ready for processing",
            extra={
                "extra_fields": safe_log_context(
                    sender=hash_identifier(sender_id),
                    session_id_hash=hash_identifier(session_id),
                    reason=reason,
                    message_count=record.message_count,
                    duration_ms=record.duration_ms,
                )
            },
        )

        self._store.delete(sender_id)
        events.append(partial(self._notify_finalized, record))
        return record

    def flush_all(self) -> int:
        """Finalize every active session (orderly shutdown).

        Returns:
            Number of records emitted.
        """
        sender_ids = self._store.sender_ids()
        logger.info(
            "flushing all pending sessions",
            extra={"extra_fields": safe_log_context(count=len(sender_ids))},
        )
        emitted = 0
        for sender_id in sender_ids:
            events: _Events = []
            with self._lock_for(sender_id):
                if self._finalize_locked(sender_id, events, reason="flush") is not None:
                    emitted += 1
            self._dispatch(events)
        return emitted

    # ------------------------------------------------------------------
    # Listener dispatch (never under a sender lock)
    # ------------------------------------------------------------------

    def _dispatch(self, events: _Events) -> None:
        for event in events:
            event()

    def _notify_started(self, session_id: str, sender_number: str) -> None:
        try:
            self._listener.on_session_started(session_id, sender_number)
        except Exception:
            logger.exception("session started listener failed")

    def _notify_finalized(self, record: FinalizedSessionRecord) -> None:
        try:
            self._listener.on_session_finalized(record)
        except Exception:
            logger.exception(
                "session finalized listener failed",
                extra={
                    "extra_fields": safe_log_context(
                        session_id_hash=hash_identifier(record.session_id)
                    )
                },
            )

    # ------------------------------------------------------------------
    # Introspection / teardown
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Active session summary. Sender identities are hashed."""
        now = self._clock()
        sessions = [
            {
                "sender": hash_identifier(session.sender_id),
                "messageCount": len(session.messages),
                "filledSlots": [k for k, v in session.slots.to_dict().items() if v is not None],
                "ageMs": now - session.started_at,
            }
            for session in self._store
        ]
        return {"activeSessions": len(sessions), "sessions": sessions}

    def close(self) -> None:
        """Cancel all timers and drop all sessions without emitting them."""
        for sender_id in list(self._timers):
            self._cancel_timer(sender_id)
        self._store.clear()
