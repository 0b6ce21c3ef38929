"""Contacts repository - persisted processing results and raw inbound messages.

Uses raw SQL with psycopg2 (no ORM). The caller owns the transaction
(with txn() as cur:).
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from contactly.domain.results import ProcessingResult
from contactly.domain.sessions import Message

_CONTACT_COLUMNS = """
    id, session_id, sender_number, push_name,
    extracted_name, extracted_address, extracted_mobile,
    confidence, notes, status, error,
    raw_messages, combined_text, processed_at, created_at, updated_at
"""

# Statuses an operator may set by hand
REVIEW_STATUSES = frozenset({"processed", "reviewed", "failed", "archived"})


def save_contact(cur: PgCursor, result: ProcessingResult) -> int:
    """Insert or replace the contact row for a session.

    Args:
        cur: Database cursor (within transaction).
        result: Processing result to persist.

    Returns:
        The contact row id.
    """
    extracted = result.extracted
    cur.execute(
        """
        INSERT INTO contacts (
            session_id, sender_number, push_name,
            extracted_name, extracted_address, extracted_mobile,
            confidence, notes, status, error,
            raw_messages, combined_text, processed_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (session_id) DO UPDATE SET
            extracted_name = EXCLUDED.extracted_name,
            extracted_address = EXCLUDED.extracted_address,
            extracted_mobile = EXCLUDED.extracted_mobile,
            confidence = EXCLUDED.confidence,
            notes = EXCLUDED.notes,
            status = EXCLUDED.status,
            error = EXCLUDED.error,
            raw_messages = EXCLUDED.raw_messages,
            combined_text = EXCLUDED.combined_text,
            processed_at = EXCLUDED.processed_at,
            updated_at = now()
        RETURNING id
        """,
        (
            result.session_id,
            result.sender_number,
            result.push_name,
            extracted.name,
            extracted.address,
            extracted.mobile,
            extracted.confidence,
            extracted.notes,
            result.status.value,
            result.error,
            json.dumps([m.to_dict() for m in result.raw_messages]),
            result.combined_text,
            result.processed_at,
        ),
    )
    return cur.fetchone()[0]


def save_raw_message(cur: PgCursor, message: Message) -> bool:
    """Store an inbound message once (by message id).

    Returns:
        True if inserted, False if the message id was already stored.
    """
    cur.execute(
        """
        INSERT INTO raw_messages (
            message_id, sender_number, push_name, message_text,
            sent_at, received_at
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (message_id) DO NOTHING
        """,
        (
            message.id,
            message.sender_number,
            message.push_name,
            message.text,
            message.timestamp,
            message.received_at,
        ),
    )
    return cur.rowcount == 1


def _row_to_contact(row: tuple[Any, ...]) -> dict[str, Any]:
    raw_messages = row[11]
    if isinstance(raw_messages, str):
        raw_messages = json.loads(raw_messages)
    return {
        "id": row[0],
        "sessionId": row[1],
        "senderNumber": row[2],
        "pushName": row[3],
        "extracted": {
            "name": row[4],
            "address": row[5],
            "mobile": row[6],
            "confidence": float(row[7]) if row[7] is not None else 0.0,
            "notes": row[8],
        },
        "status": row[9],
        "error": row[10],
        "rawMessages": raw_messages or [],
        "combinedText": row[12],
        "processedAt": row[13],
        "createdAt": row[14].isoformat() if row[14] else None,
        "updatedAt": row[15].isoformat() if row[15] else None,
    }


def list_contacts(
    cur: PgCursor,
    *,
    limit: int = 50,
    offset: int = 0,
    status: str | None = None,
    search: str | None = None,
) -> list[dict[str, Any]]:
    """List contacts, newest first.

    Args:
        cur: Database cursor.
        limit: Page size.
        offset: Rows to skip.
        status: Optional status filter.
        search: Optional substring matched against name, address, mobile
            and sender number (case-insensitive).
    """
    clauses: list[str] = []
    params: list[Any] = []
    if status:
        clauses.append("status = %s")
        params.append(status)
    if search:
        clauses.append(
            "(extracted_name ILIKE %s OR extracted_address ILIKE %s"
            " OR extracted_mobile ILIKE %s OR sender_number ILIKE %s)"
        )
        term = f"%{search}%"
        params.extend([term, term, term, term])

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.extend([limit, offset])
    cur.execute(
        f"""
        SELECT {_CONTACT_COLUMNS}
        FROM contacts
        {where}
        ORDER BY created_at DESC
        LIMIT %s OFFSET %s
        """,
        params,
    )
    return [_row_to_contact(row) for row in cur.fetchall()]


def get_contact_by_session_id(cur: PgCursor, session_id: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE session_id = %s",
        (session_id,),
    )
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def update_contact_status(cur: PgCursor, session_id: str, status: str) -> bool:
    """Set a contact's status.

    Raises:
        ValueError: If status is not one of REVIEW_STATUSES.

    Returns:
        True if a row was updated.
    """
    if status not in REVIEW_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    cur.execute(
        "UPDATE contacts SET status = %s, updated_at = now() WHERE session_id = %s",
        (status, session_id),
    )
    return cur.rowcount > 0


def get_contact_stats(cur: PgCursor) -> dict[str, int]:
    """Counts by status plus contacts created today (database time zone)."""
    cur.execute(
        """
        SELECT
            COUNT(*),
            COUNT(*) FILTER (WHERE status = 'processed'),
            COUNT(*) FILTER (WHERE status = 'low_confidence'),
            COUNT(*) FILTER (WHERE status = 'failed'),
            COUNT(*) FILTER (WHERE created_at >= date_trunc('day', now()))
        FROM contacts
        """
    )
    row = cur.fetchone()
    return {
        "total": row[0],
        "processed": row[1],
        "lowConfidence": row[2],
        "failed": row[3],
        "today": row[4],
    }
