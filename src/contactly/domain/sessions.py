"""Message and session models for the correlation stage.

Wire representations (to_dict/from_dict) use the camelCase keys of the
inbound and queued contracts; attributes stay snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Slot(str, Enum):
    NAME = "name"
    MOBILE = "mobile"
    ADDRESS = "address"
    UNKNOWN = "unknown"


FILLABLE_SLOTS: tuple[Slot, ...] = (Slot.NAME, Slot.MOBILE, Slot.ADDRESS)


def _require(data: dict[str, Any], key: str) -> Any:
    if key not in data:
        raise ValueError(f"missing field: {key}")
    return data[key]


@dataclass(frozen=True)
class Message:
    """Inbound text message. Identity is `id`."""

    id: str
    sender_id: str
    sender_number: str
    push_name: str
    text: str
    timestamp: int
    received_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "senderNumber": self.sender_number,
            "pushName": self.push_name,
            "text": self.text,
            "timestamp": self.timestamp,
            "receivedAt": self.received_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=str(_require(data, "id")),
            sender_id=str(_require(data, "senderId")),
            sender_number=str(_require(data, "senderNumber")),
            push_name=str(data.get("pushName") or ""),
            text=str(_require(data, "text")),
            timestamp=int(_require(data, "timestamp")),
            received_at=data.get("receivedAt"),
        )


@dataclass
class SlotSet:
    """At most one value per fillable slot."""

    name: str | None = None
    mobile: str | None = None
    address: str | None = None

    def get(self, slot: Slot) -> str | None:
        if slot is Slot.UNKNOWN:
            return None
        return getattr(self, slot.value)

    def is_filled(self, slot: Slot) -> bool:
        return self.get(slot) is not None

    def fill(self, slot: Slot, value: str) -> bool:
        """Set an empty slot. Returns False (and keeps the old value) if already filled."""
        if slot is Slot.UNKNOWN or self.is_filled(slot):
            return False
        setattr(self, slot.value, value)
        return True

    def filled_count(self) -> int:
        return sum(1 for slot in FILLABLE_SLOTS if self.is_filled(slot))

    def to_dict(self) -> dict[str, str | None]:
        return {slot.value: self.get(slot) for slot in FILLABLE_SLOTS}


@dataclass
class Session:
    """Accumulating buffer of messages from one sender.

    Owned by the correlator; never handed out. A session present in the
    store always has at least one message.
    """

    sender_id: str
    sender_number: str
    push_name: str
    started_at: int
    last_message_at: int
    messages: list[Message] = field(default_factory=list)
    slots: SlotSet = field(default_factory=SlotSet)

    @property
    def session_id(self) -> str:
        return session_id_for(self.sender_id, self.started_at)


def session_id_for(sender_id: str, started_at: int) -> str:
    """Public identifier of a session: sender plus creation time."""
    return f"{sender_id}_{started_at}"


@dataclass(frozen=True)
class FinalizedSessionRecord:
    """Immutable snapshot of a session, taken at finalize time."""

    session_id: str
    sender_id: str
    sender_number: str
    push_name: str
    message_count: int
    combined_text: str
    messages: tuple[Message, ...]
    slots: dict[str, str | None]
    started_at: int
    completed_at: int
    duration_ms: int

    @classmethod
    def from_session(cls, session: Session, completed_at: int) -> "FinalizedSessionRecord":
        messages = tuple(session.messages)
        return cls(
            session_id=session.session_id,
            sender_id=session.sender_id,
            sender_number=session.sender_number,
            push_name=session.push_name,
            message_count=len(messages),
            combined_text="\n".join(m.text for m in messages),
            messages=messages,
            slots=session.slots.to_dict(),
            started_at=session.started_at,
            completed_at=completed_at,
            duration_ms=completed_at - session.started_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "senderId": self.sender_id,
            "senderNumber": self.sender_number,
            "pushName": self.push_name,
            "messageCount": self.message_count,
            "combinedText": self.combined_text,
            "messages": [m.to_dict() for m in self.messages],
            "slots": dict(self.slots),
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FinalizedSessionRecord":
        """Rebuild a record from its queued form.

        Raises:
            ValueError: If a required field is missing or has the wrong shape.
        """
        if not isinstance(data, dict):
            raise ValueError("session record must be an object")
        raw_messages = _require(data, "messages")
        if not isinstance(raw_messages, list):
            raise ValueError("messages must be a list")
        try:
            messages = tuple(Message.from_dict(m) for m in raw_messages)
            return cls(
                session_id=str(_require(data, "sessionId")),
                sender_id=str(_require(data, "senderId")),
                sender_number=str(_require(data, "senderNumber")),
                push_name=str(data.get("pushName") or ""),
                message_count=int(data.get("messageCount", len(messages))),
                combined_text=str(_require(data, "combinedText")),
                messages=messages,
                slots=dict(data.get("slots") or {}),
                started_at=int(_require(data, "startedAt")),
                completed_at=int(_require(data, "completedAt")),
                duration_ms=int(data.get("durationMs", 0)),
            )
        except (TypeError, AttributeError) as e:
            raise ValueError(f"malformed session record: {e}") from e
