"""Request-scoped access to the process pipeline."""

from fastapi import Request

from contactly.pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    """Pipeline attached to the app at creation (tests override it the same way)."""
    return request.app.state.pipeline
