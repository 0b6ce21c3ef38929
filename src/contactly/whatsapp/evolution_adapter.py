"""Evolution API adapter - validate and normalize webhook payloads.

Two event types matter:
- messages.upsert: a new message; text ones become domain Messages
- messages.update: a status change; revocations (delete for everyone)
  become Revocation events

Everything else is reported as "ignored" so the route can ACK it.
"""

import re
from typing import Any, Callable

from contactly.domain.sessions import Message
from contactly.infra.time import epoch_ms

from .models import Revocation, WebhookEvent

UPSERT_EVENTS = frozenset({"messages.upsert", "MESSAGES_UPSERT"})
UPDATE_EVENTS = frozenset({"messages.update", "MESSAGES_UPDATE"})

DEFAULT_PUSH_NAME = "Unknown"

_JID_SUFFIXES = ("@s.whatsapp.net", "@g.us")
_NON_DIGITS = re.compile(r"[^0-9]")

# protocolMessage.type for "delete for everyone"
_REVOKE_PROTOCOL_TYPES = (0, "REVOKE")


class InvalidPayloadError(Exception):
    """Raised when Evolution payload has invalid shape."""

    pass


def sender_number_from_jid(remote_jid: str) -> str:
    """Strip the WhatsApp JID suffix: "919876543210@s.whatsapp.net" -> "919876543210"."""
    number = remote_jid
    for suffix in _JID_SUFFIXES:
        number = number.replace(suffix, "")
    return number


def is_allowed_sender(sender_number: str, allowed_sender: str | None) -> bool:
    """Check the optional sender filter.

    The filter is compared by digits only and matches when contained in the
    sender number, so "+91 98765-43210" allows "919876543210".
    """
    if not allowed_sender:
        return True
    allowed_digits = _NON_DIGITS.sub("", allowed_sender)
    if not allowed_digits:
        return True
    return allowed_digits in sender_number


def _extract_text(message: Any) -> str | None:
    if not isinstance(message, dict):
        return None
    text = message.get("conversation")
    if not text:
        extended = message.get("extendedTextMessage") or {}
        text = extended.get("text") if isinstance(extended, dict) else None
    return text if isinstance(text, str) and text else None


def _timestamp_ms(raw: Any, fallback: int) -> int:
    """messageTimestamp is in seconds (int or numeric string)."""
    if raw is None or isinstance(raw, bool):
        return fallback
    try:
        return int(float(raw) * 1000)
    except (TypeError, ValueError):
        return fallback


def _normalize_upsert(
    data: dict[str, Any], *, allowed_sender: str | None, now: int
) -> WebhookEvent:
    key = data.get("key")
    if not isinstance(key, dict):
        raise InvalidPayloadError("missing key")

    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    remote_jid = key.get("remoteJid")
    if not remote_jid or not isinstance(remote_jid, str):
        raise InvalidPayloadError("missing remoteJid")

    if key.get("fromMe"):
        return WebhookEvent(kind="ignored", reason="from_me")

    text = _extract_text(data.get("message"))
    if text is None:
        return WebhookEvent(kind="ignored", reason="non_text")

    sender_number = sender_number_from_jid(remote_jid)
    if not is_allowed_sender(sender_number, allowed_sender):
        return WebhookEvent(kind="ignored", reason="sender_not_allowed")

    return WebhookEvent(
        kind="message",
        message=Message(
            id=message_id,
            sender_id=remote_jid,
            sender_number=sender_number,
            push_name=data.get("pushName") or DEFAULT_PUSH_NAME,
            text=text,
            timestamp=_timestamp_ms(data.get("messageTimestamp"), now),
            received_at=now,
        ),
    )


def _is_revocation(item: dict[str, Any]) -> bool:
    update = item.get("update")
    if not isinstance(update, dict):
        return False
    if "message" in update and update["message"] is None:
        return True
    protocol = update.get("protocolMessage")
    if not isinstance(protocol, dict):
        message = update.get("message")
        protocol = message.get("protocolMessage") if isinstance(message, dict) else None
    return isinstance(protocol, dict) and protocol.get("type") in _REVOKE_PROTOCOL_TYPES


def _normalize_update(item: dict[str, Any]) -> WebhookEvent:
    if not _is_revocation(item):
        return WebhookEvent(kind="ignored", reason="not_revocation")

    key = item.get("key")
    if not isinstance(key, dict):
        raise InvalidPayloadError("missing key")
    remote_jid = key.get("remoteJid")
    message_id = key.get("id")
    if not remote_jid or not message_id:
        raise InvalidPayloadError("revocation without remoteJid or id")

    return WebhookEvent(
        kind="revocation",
        revocation=Revocation(sender_id=str(remote_jid), message_id=str(message_id)),
    )


def normalize(
    payload: dict[str, Any],
    *,
    allowed_sender: str | None = None,
    clock: Callable[[], int] = epoch_ms,
) -> list[WebhookEvent]:
    """Normalize an Evolution webhook delivery into events.

    Args:
        payload: Raw webhook payload from Evolution API.
        allowed_sender: Optional sender filter (see is_allowed_sender).
        clock: Epoch-ms clock used for receivedAt and missing timestamps.

    Returns:
        One WebhookEvent per item in `data` (Evolution sends a single object
        for most events, a list for some batched updates).

    Raises:
        InvalidPayloadError: If required fields are missing or invalid.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("payload must be an object")

    event = payload.get("event")
    data = payload.get("data")
    items = data if isinstance(data, list) else [data]
    if not items or not all(isinstance(item, dict) for item in items):
        raise InvalidPayloadError("missing data")

    if event in UPSERT_EVENTS:
        now = clock()
        return [
            _normalize_upsert(item, allowed_sender=allowed_sender, now=now)
            for item in items
        ]
    if event in UPDATE_EVENTS:
        return [_normalize_update(item) for item in items]
    return [WebhookEvent(kind="ignored", reason="unsupported_event")]
