"""Contact store facade used by the pipeline.

PostgresContactStore opens one short transaction per call through the
contacts repository. InMemoryContactStore keeps the same interface for
processes started without DATABASE_URL (local runs, tests).
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Protocol

from contactly.domain.results import ProcessingResult
from contactly.domain.sessions import Message
from contactly.infra.db import txn
from contactly.infra.repositories import contacts_repository as repo
from contactly.infra.time import utc_now


class ContactStore(Protocol):
    def save_result(self, result: ProcessingResult) -> int: ...

    def save_raw_message(self, message: Message) -> bool: ...

    def list_contacts(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]: ...

    def get_contact(self, session_id: str) -> dict[str, Any] | None: ...

    def update_status(self, session_id: str, status: str) -> bool: ...

    def stats(self) -> dict[str, int]: ...


class PostgresContactStore:
    """ContactStore backed by Postgres."""

    def __init__(self, dsn: str | None = None) -> None:
        self._dsn = dsn

    def save_result(self, result: ProcessingResult) -> int:
        with txn(dsn=self._dsn) as cur:
            return repo.save_contact(cur, result)

    def save_raw_message(self, message: Message) -> bool:
        with txn(dsn=self._dsn) as cur:
            return repo.save_raw_message(cur, message)

    def list_contacts(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        with txn(dsn=self._dsn) as cur:
            return repo.list_contacts(
                cur, limit=limit, offset=offset, status=status, search=search
            )

    def get_contact(self, session_id: str) -> dict[str, Any] | None:
        with txn(dsn=self._dsn) as cur:
            return repo.get_contact_by_session_id(cur, session_id)

    def update_status(self, session_id: str, status: str) -> bool:
        with txn(dsn=self._dsn) as cur:
            return repo.update_contact_status(cur, session_id, status)

    def stats(self) -> dict[str, int]:
        with txn(dsn=self._dsn) as cur:
            return repo.get_contact_stats(cur)


class InMemoryContactStore:
    """Process-local ContactStore with the same upsert semantics."""

    def __init__(self) -> None:
        self._contacts: dict[str, dict[str, Any]] = {}
        self._raw_message_ids: set[str] = set()
        self._next_id = 1
        self._lock = threading.Lock()

    def save_result(self, result: ProcessingResult) -> int:
        now = utc_now()
        with self._lock:
            existing = self._contacts.get(result.session_id)
            contact_id = existing["id"] if existing else self._next_id
            if existing is None:
                self._next_id += 1
            row = result.to_dict()
            row.setdefault("error", None)
            row["id"] = contact_id
            row["createdAt"] = existing["createdAt"] if existing else now.isoformat()
            row["updatedAt"] = now.isoformat()
            self._contacts[result.session_id] = row
            return contact_id

    def save_raw_message(self, message: Message) -> bool:
        with self._lock:
            if message.id in self._raw_message_ids:
                return False
            self._raw_message_ids.add(message.id)
            return True

    def list_contacts(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = sorted(self._contacts.values(), key=lambda r: r["id"], reverse=True)
        if status:
            rows = [r for r in rows if r["status"] == status]
        if search:
            needle = search.lower()
            rows = [r for r in rows if needle in _searchable(r)]
        return [dict(r) for r in rows[offset : offset + limit]]

    def get_contact(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._contacts.get(session_id)
            return dict(row) if row else None

    def update_status(self, session_id: str, status: str) -> bool:
        if status not in repo.REVIEW_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        with self._lock:
            row = self._contacts.get(session_id)
            if row is None:
                return False
            row["status"] = status
            row["updatedAt"] = utc_now().isoformat()
            return True

    def stats(self) -> dict[str, int]:
        today = datetime.now(timezone.utc).date().isoformat()
        with self._lock:
            rows = list(self._contacts.values())
        return {
            "total": len(rows),
            "processed": sum(1 for r in rows if r["status"] == "processed"),
            "lowConfidence": sum(1 for r in rows if r["status"] == "low_confidence"),
            "failed": sum(1 for r in rows if r["status"] == "failed"),
            "today": sum(1 for r in rows if r["createdAt"].startswith(today)),
        }


def _searchable(row: dict[str, Any]) -> str:
    extracted = row.get("extracted") or {}
    parts = [
        extracted.get("name"),
        extracted.get("address"),
        extracted.get("mobile"),
        row.get("senderNumber"),
    ]
    return " ".join(p for p in parts if p).lower()
