"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter, Depends

from contactly.api.deps import get_pipeline
from contactly.pipeline import Pipeline

router = APIRouter()


@router.get("/health")
def health(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    """Health check with active-session summary (sender identities hashed)."""
    return pipeline.health()
