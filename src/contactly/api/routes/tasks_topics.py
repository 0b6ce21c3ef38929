"""Worker intake for envelopes forwarded by the http queue backend.

The worker appends each accepted envelope to its local topic, where the
consumer groups pick it up. Retried deliveries carry the same record_id
and are answered with "duplicate".
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from contactly.api.deps import get_pipeline
from contactly.api.task_auth import verify_task_auth
from contactly.observability.correlation import get_correlation_id
from contactly.observability.logging import get_logger
from contactly.observability.redaction import safe_log_context
from contactly.pipeline import Pipeline
from contactly.tasks.contracts import TopicEnvelopeV1

router = APIRouter(prefix="/tasks/topics", tags=["tasks"])

logger = get_logger(__name__)


@router.post("/{topic}")
async def receive_envelope(
    topic: str,
    request: Request,
    pipeline: Pipeline = Depends(get_pipeline),
) -> Response:
    """Accept one forwarded envelope.

    Returns:
        202 "accepted" when appended, 200 "duplicate" for a repeated record_id.
        400 on invalid JSON, malformed envelope or topic mismatch.
        401 if the task secret does not match.
    """
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    try:
        envelope = TopicEnvelopeV1.from_dict(payload)
    except ValueError as e:
        logger.warning(
            "invalid envelope",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, reason=str(e)
                )
            },
        )
        return Response(status_code=400, content="invalid envelope")

    if envelope.topic != topic:
        logger.warning(
            "envelope topic mismatch",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, path_topic=topic, topic=envelope.topic
                )
            },
        )
        return Response(status_code=400, content="topic mismatch")

    if not pipeline.accept_envelope(envelope):
        return Response(status_code=200, content="duplicate")

    logger.info(
        "envelope accepted",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                topic=envelope.topic,
                record_id=envelope.record_id,
            )
        },
    )
    return Response(status_code=202, content="accepted")
