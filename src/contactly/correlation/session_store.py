"""In-memory session table and deduplication caches.

The store does no locking of its own for sessions: callers serialize access
per sender (see SessionCorrelator). The id caches are shared by all senders
and carry their own lock.
"""

from __future__ import annotations

import threading
from typing import Iterator

from contactly.domain.sessions import Session

# Cache ceilings (entries)
SEEN_MESSAGES_MAX = 10_000
FINALIZED_SESSIONS_MAX = 1_000


class BoundedIdCache:
    """Insertion-ordered id set with batch eviction.

    When the size exceeds `max_size`, the oldest half (by insertion order)
    is dropped in one go. Lookups do not refresh an entry, and a duplicate
    arriving after its id was evicted is admitted again.
    """

    def __init__(self, max_size: int) -> None:
        if max_size < 2:
            raise ValueError("max_size must be at least 2")
        self._max_size = max_size
        self._ids: dict[str, None] = {}
        self._lock = threading.Lock()

    def add(self, item_id: str) -> bool:
        """Record an id.

        Returns:
            True if the id was new, False if it was already present.
        """
        with self._lock:
            if item_id in self._ids:
                return False
            self._ids[item_id] = None
            if len(self._ids) > self._max_size:
                self._evict_oldest_half()
            return True

    def _evict_oldest_half(self) -> None:
        evict_count = self._max_size // 2
        for key in list(self._ids)[:evict_count]:
            del self._ids[key]

    def discard(self, item_id: str) -> None:
        with self._lock:
            self._ids.pop(item_id, None)

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            return item_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()


class SessionStore:
    """Sender id -> active session, plus the two dedupe caches."""

    def __init__(
        self,
        *,
        seen_messages_max: int = SEEN_MESSAGES_MAX,
        finalized_sessions_max: int = FINALIZED_SESSIONS_MAX,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._table_lock = threading.Lock()
        self.seen_messages = BoundedIdCache(seen_messages_max)
        self.finalized_sessions = BoundedIdCache(finalized_sessions_max)

    def get(self, sender_id: str) -> Session | None:
        with self._table_lock:
            return self._sessions.get(sender_id)

    def put(self, session: Session) -> None:
        with self._table_lock:
            self._sessions[session.sender_id] = session

    def delete(self, sender_id: str) -> Session | None:
        with self._table_lock:
            return self._sessions.pop(sender_id, None)

    def sender_ids(self) -> list[str]:
        """Snapshot of active senders, safe to iterate while sessions change."""
        with self._table_lock:
            return list(self._sessions)

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        with self._table_lock:
            sessions = list(self._sessions.values())
        return iter(sessions)

    def clear(self) -> None:
        with self._table_lock:
            self._sessions.clear()
