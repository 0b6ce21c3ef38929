"""Topic record contract v1 - the envelope every queued item travels in.

All published payloads use this contract to ensure:
- Version compatibility between api and worker processes
- A stable record_id for idempotent publish
- A partition key carried next to the payload
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class TopicEnvelopeV1:
    """Topic envelope v1.

    Attributes:
        version: Contract version (always "v1").
        topic: Destination topic name.
        key: Partition key (None for unpartitioned topics).
        record_id: Unique identifier for idempotent publish.
        payload: Record body.
    """

    version: Literal["v1"] = field(default="v1", init=False)
    topic: str = ""
    key: str | None = None
    record_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "version": self.version,
            "topic": self.topic,
            "key": self.key,
            "record_id": self.record_id,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TopicEnvelopeV1":
        """Create from dict.

        Raises:
            ValueError: On unsupported version or missing topic/record_id.
        """
        if not isinstance(data, dict):
            raise ValueError("envelope must be an object")
        if data.get("version") != "v1":
            raise ValueError(f"Unsupported version: {data.get('version')}")
        topic = data.get("topic")
        record_id = data.get("record_id")
        if not topic or not record_id:
            raise ValueError("envelope requires topic and record_id")
        payload = data.get("payload", {})
        if not isinstance(payload, dict):
            raise ValueError("envelope payload must be an object")
        key = data.get("key")
        return cls(
            topic=str(topic),
            key=str(key) if key is not None else None,
            record_id=str(record_id),
            payload=payload,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "TopicEnvelopeV1":
        """Parse a serialized envelope.

        Raises:
            ValueError: If the text is not valid JSON or not a valid envelope.
        """
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"invalid envelope json: {e}") from e
        return cls.from_dict(data)
