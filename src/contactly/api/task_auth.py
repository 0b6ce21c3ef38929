"""Shared-secret authentication for worker task intake.

The publishing process sends INTERNAL_TASK_SECRET in the
X-Internal-Task-Secret header. The worker fails closed when no secret is
configured.
"""

from __future__ import annotations

import hmac
import os

from fastapi import Request

from contactly.observability.logging import get_logger
from contactly.observability.redaction import safe_log_context

logger = get_logger(__name__)

TASK_SECRET_HEADER = "X-Internal-Task-Secret"


def verify_task_auth(request: Request) -> bool:
    """Verify the internal task secret header.

    Args:
        request: FastAPI request object.

    Returns:
        True if authenticated, False otherwise.
    """
    expected = os.environ.get("INTERNAL_TASK_SECRET", "")
    if not expected:
        logger.error(
            "INTERNAL_TASK_SECRET not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_secret_env")},
        )
        return False

    received = request.headers.get(TASK_SECRET_HEADER, "")
    if not received or not hmac.compare_digest(received, expected):
        logger.warning(
            "task auth failed: secret mismatch",
            extra={"extra_fields": safe_log_context(reason="secret_mismatch")},
        )
        return False
    return True
