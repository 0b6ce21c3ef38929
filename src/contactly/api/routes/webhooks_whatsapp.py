"""WhatsApp webhook routes - Evolution API integration.

Security:
- Message text, sender numbers and profile names exist only in memory and
  in the contact store; they never reach logs
- Optional shared secret (EVOLUTION_WEBHOOK_SECRET) checked in constant time
"""

import hmac
import os
from typing import Any

from fastapi import APIRouter, Depends, Header, Request, Response

from contactly.api.deps import get_pipeline
from contactly.observability.correlation import get_correlation_id
from contactly.observability.logging import get_logger
from contactly.observability.redaction import hash_identifier, safe_log_context
from contactly.pipeline import Pipeline
from contactly.whatsapp.evolution_adapter import InvalidPayloadError, normalize

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)


@router.post("/evolution")
async def evolution_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> Response:
    """Receive Evolution API webhook.

    messages.upsert text messages go to the correlator; revocations from
    messages.update remove the buffered message. Everything else is ACKed
    and ignored.

    Returns:
        200 "ok" if at least one event was applied, 200 "ignored" otherwise.
        400 Bad Request if payload invalid.
        401 Unauthorized if a secret is configured and does not match.
    """
    correlation_id = get_correlation_id()

    expected_secret = os.environ.get("EVOLUTION_WEBHOOK_SECRET", "")
    if expected_secret and (
        not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected_secret)
    ):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=401, content="unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    try:
        events = normalize(payload, allowed_sender=pipeline.settings.allowed_sender)
    except InvalidPayloadError as e:
        logger.warning(
            "invalid evolution payload shape",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, reason=str(e)
                )
            },
        )
        return Response(status_code=400, content="invalid payload shape")

    applied = 0
    for event in events:
        if event.kind == "message" and event.message is not None:
            msg = event.message
            logger.info(
                "evolution message received",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id,
                        message_id_prefix=msg.id[:8],
                        sender=hash_identifier(msg.sender_id),
                        text_len=len(msg.text),
                    )
                },
            )
            if pipeline.ingest(msg):
                applied += 1
        elif event.kind == "revocation" and event.revocation is not None:
            if pipeline.revoke(event.revocation):
                applied += 1
        else:
            logger.debug(
                "evolution event ignored",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id, reason=event.reason
                    )
                },
            )

    return Response(status_code=200, content="ok" if applied else "ignored")
