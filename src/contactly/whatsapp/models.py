"""WhatsApp webhook event models."""

from dataclasses import dataclass
from typing import Literal

from contactly.domain.sessions import Message

EventKind = Literal["message", "revocation", "ignored"]


@dataclass(frozen=True)
class Revocation:
    """A message the sender deleted for everyone."""

    sender_id: str
    message_id: str


@dataclass(frozen=True)
class WebhookEvent:
    """Result of normalizing one webhook delivery.

    PII: `message.text`, `message.sender_number` and `message.push_name`
    never go to logs.
    """

    kind: EventKind
    message: Message | None = None
    revocation: Revocation | None = None
    reason: str | None = None
