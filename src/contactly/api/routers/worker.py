"""Worker/internal routes (APP_ROLE=worker)."""

from fastapi import APIRouter, Depends

from contactly.api.deps import get_pipeline
from contactly.pipeline import Pipeline

router = APIRouter()


@router.get("/tasks/health")
def tasks_health(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    """Tasks subsystem health check."""
    health = pipeline.health()
    return {
        "status": "ok",
        "subsystem": "tasks",
        "consumerLag": health["consumerLag"],
    }
