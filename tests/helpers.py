"""Shared test helpers (fakes and builders) for contactly tests.

Regular functions and classes, importable from conftest.py and test modules.
"""

from __future__ import annotations

import os
from typing import Callable

from contactly.config import Settings
from contactly.domain.sessions import FinalizedSessionRecord, Message
from contactly.extraction.groq_client import ExtractionError, ExtractionResponse

SENDER_JID = "919876500001@s.whatsapp.net"
SENDER_NUMBER = "919876500001"


class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


class _ManualTimer:
    def __init__(self, due_ms: int, callback: Callable[[], None]) -> None:
        self.due_ms = due_ms
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose timers fire only from advance(), on the calling thread."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.timers: list[_ManualTimer] = []

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self.clock() + int(delay_seconds * 1000), callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[_ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        target = self.clock() + int(seconds * 1000)
        while True:
            due = [t for t in self.pending() if t.due_ms <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due_ms)
            self.clock.now_ms = max(self.clock.now_ms, timer.due_ms)
            timer.fired = True
            timer.callback()
        self.clock.now_ms = target

    def fire(self, timer: _ManualTimer) -> None:
        """Run a timer's callback regardless of its state (late-fire simulation)."""
        timer.fired = True
        timer.callback()


class RecordingListener:
    def __init__(self) -> None:
        self.started: list[tuple[str, str]] = []
        self.finalized: list[FinalizedSessionRecord] = []

    def on_session_started(self, session_id: str, sender_number: str) -> None:
        self.started.append((session_id, sender_number))

    def on_session_finalized(self, record: FinalizedSessionRecord) -> None:
        self.finalized.append(record)


class FakeExtractor:
    """Extractor returning queued responses; Exceptions in the queue are raised."""

    def __init__(self, *responses: dict | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str]] = []

    def extract(self, combined_text: str, push_name: str) -> ExtractionResponse:
        self.calls.append((combined_text, push_name))
        response = self.responses.pop(0) if self.responses else ExtractionError("no response")
        if isinstance(response, Exception):
            raise response
        return ExtractionResponse(data=response, model="fake-model", response_ms=5)


_message_seq = 0


def make_message(
    text: str,
    *,
    message_id: str | None = None,
    sender_id: str = SENDER_JID,
    push_name: str = "Rahul",
    timestamp: int = 1_700_000_000_000,
) -> Message:
    global _message_seq
    _message_seq += 1
    return Message(
        id=message_id or f"MSG{_message_seq:06d}",
        sender_id=sender_id,
        sender_number=sender_id.split("@")[0],
        push_name=push_name,
        text=text,
        timestamp=timestamp,
        received_at=timestamp,
    )


def make_record(*texts: str, session_id: str = f"{SENDER_JID}_1700000000000") -> FinalizedSessionRecord:
    messages = tuple(make_message(t) for t in texts)
    return FinalizedSessionRecord(
        session_id=session_id,
        sender_id=SENDER_JID,
        sender_number=SENDER_NUMBER,
        push_name="Rahul",
        message_count=len(messages),
        combined_text="\n".join(texts),
        messages=messages,
        slots={"name": None, "mobile": None, "address": None},
        started_at=1_700_000_000_000,
        completed_at=1_700_000_030_000,
        duration_ms=30_000,
    )


def make_settings(**overrides) -> Settings:
    values = {"topic_partitions": 2}
    values.update(overrides)
    return Settings(**values)


def evolution_upsert(
    text: str | None,
    *,
    message_id: str = "MSG001",
    remote_jid: str = SENDER_JID,
    from_me: bool = False,
    push_name: str | None = "Rahul",
    timestamp: int | str | None = 1_700_000_000,
) -> dict:
    message = {"conversation": text} if text is not None else {"imageMessage": {"url": "x"}}
    data = {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me},
        "message": message,
        "messageType": "conversation" if text is not None else "imageMessage",
        "messageTimestamp": timestamp,
    }
    if push_name is not None:
        data["pushName"] = push_name
    return {"event": "messages.upsert", "instance": "test", "data": data}


def evolution_revoke(message_id: str, *, remote_jid: str = SENDER_JID) -> dict:
    return {
        "event": "messages.update",
        "instance": "test",
        "data": {
            "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": False},
            "update": {"message": None},
        },
    }


# Captured before the autouse fixture scrubs the environment; Postgres
# integration tests connect with it explicitly.
INTEGRATION_DSN = os.environ.get("DATABASE_URL")


def build_pipeline(
    *,
    scheduler=None,
    clock=None,
    extractor=None,
    role: str = "public",
    **settings_overrides,
):
    """Pipeline with in-memory store, fake extractor and no backoff sleeps."""
    from contactly.pipeline import Pipeline

    return Pipeline(
        make_settings(**settings_overrides),
        role=role,
        extractor=extractor or FakeExtractor(),
        scheduler=scheduler or ManualScheduler(clock),
        clock=clock,
        sleep=lambda seconds: None,
    )
