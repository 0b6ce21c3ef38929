"""Contacts endpoints for the review dashboard.

GET    /api/contacts                        → list (status/search filters, paging)
GET    /api/contacts/{session_id}           → one contact
PATCH  /api/contacts/{session_id}/status    → set review status
GET    /api/stats                           → counts by status
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from contactly.api.deps import get_pipeline
from contactly.observability.logging import get_logger
from contactly.observability.redaction import hash_identifier, safe_log_context
from contactly.pipeline import Pipeline

router = APIRouter(prefix="/api", tags=["contacts"])

logger = get_logger(__name__)


# ── Schemas ───────────────────────────────────────────────────────────────────


class UpdateStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["processed", "reviewed", "failed", "archived"]


# ── GET /api/contacts ─────────────────────────────────────────────────────────


@router.get("/contacts")
def list_contacts(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    status: str | None = None,
    search: str | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """List contacts, newest first.

    Args:
        limit: Page size (1-500).
        offset: Rows to skip.
        status: Optional exact status filter.
        search: Case-insensitive substring matched against extracted name,
                address, mobile and sender number.
    """
    contacts = pipeline.store.list_contacts(
        limit=limit, offset=offset, status=status, search=search
    )
    return {"contacts": contacts, "limit": limit, "offset": offset}


# ── GET /api/contacts/{session_id} ────────────────────────────────────────────


@router.get("/contacts/{session_id}")
def get_contact(session_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    contact = pipeline.store.get_contact(session_id)
    if contact is None:
        raise HTTPException(status_code=404, detail="Contact not found")
    return contact


# ── PATCH /api/contacts/{session_id}/status ───────────────────────────────────


@router.patch("/contacts/{session_id}/status")
def update_contact_status(
    session_id: str,
    body: UpdateStatusRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    if not pipeline.store.update_status(session_id, body.status):
        raise HTTPException(status_code=404, detail="Contact not found")
    logger.info(
        "contact status updated",
        extra={
            "extra_fields": safe_log_context(
                session_id_hash=hash_identifier(session_id), status=body.status
            )
        },
    )
    return {"sessionId": session_id, "status": body.status}


# ── GET /api/stats ────────────────────────────────────────────────────────────


@router.get("/stats")
def contact_stats(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    stats = pipeline.store.stats()
    stats["activeSessions"] = pipeline.correlator.get_stats()["activeSessions"]
    return stats
