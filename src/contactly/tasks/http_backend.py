"""HTTP backend for topics - forwards envelopes to the worker via HTTP POST.

Used where the webhook-facing api and the worker run as separate containers
on the same network. The worker appends each received envelope to its local
topic, so per-key ordering holds from the moment of intake.
"""

import os

import requests

from contactly.observability.logging import get_logger
from contactly.observability.redaction import safe_log_context
from contactly.tasks.contracts import TopicEnvelopeV1

logger = get_logger(__name__)

WORKER_BASE_URL = os.environ.get("WORKER_BASE_URL", "http://worker:8000")
INTERNAL_TASK_SECRET = os.environ.get("INTERNAL_TASK_SECRET", "")
HTTP_TIMEOUT = int(os.environ.get("TASKS_HTTP_TIMEOUT", "30"))

TOPICS_PATH = "/tasks/topics"


def publish_http(
    envelope: TopicEnvelopeV1,
    correlation_id: str | None = None,
) -> bool:
    """Send an envelope to the worker's topic intake.

    Args:
        envelope: Envelope to deliver.
        correlation_id: Optional correlation ID for tracing.

    Returns:
        True if the worker accepted it (2xx, including "duplicate"), False otherwise.
    """
    url = f"{WORKER_BASE_URL.rstrip('/')}{TOPICS_PATH}/{envelope.topic}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-Id": correlation_id or "",
        "X-Task-Id": envelope.record_id,
    }
    if INTERNAL_TASK_SECRET:
        headers["X-Internal-Task-Secret"] = INTERNAL_TASK_SECRET

    try:
        response = requests.post(
            url,
            json=envelope.to_dict(),
            headers=headers,
            timeout=HTTP_TIMEOUT,
        )
        response.raise_for_status()
        logger.info(
            "record forwarded to worker",
            extra={
                "extra_fields": safe_log_context(
                    topic=envelope.topic,
                    record_id=envelope.record_id,
                    status_code=response.status_code,
                )
            },
        )
        return True
    except requests.RequestException as e:
        logger.error(
            "record forward to worker failed",
            extra={
                "extra_fields": safe_log_context(
                    topic=envelope.topic,
                    record_id=envelope.record_id,
                    url=url,
                    error=str(e),
                )
            },
        )
        return False
