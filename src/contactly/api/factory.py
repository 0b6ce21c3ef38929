"""FastAPI application factory with role-based route mounting."""

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Literal

from fastapi import FastAPI, Request, Response

from contactly.config import load_settings
from contactly.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from contactly.pipeline import Pipeline

from .routers import public, worker
from .routes import contacts, tasks_topics, webhooks_whatsapp

AppRole = Literal["public", "worker"]


def create_app(role: AppRole | None = None, pipeline: Pipeline | None = None) -> FastAPI:
    """Create FastAPI app with routes based on APP_ROLE.

    Args:
        role: Explicit role override. If None, reads from APP_ROLE env var.
              Defaults to "public" if env var is not set.
        pipeline: Prebuilt pipeline (tests). If None, one is built from
              environment settings.

    Returns:
        Configured FastAPI application. Consumers start with the app and
        open sessions are flushed when it stops.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]
    if role not in ("public", "worker"):
        raise ValueError(f"Unknown APP_ROLE: {role}")

    if pipeline is None:
        pipeline = Pipeline(load_settings(), role=role)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        pipeline.start()
        try:
            yield
        finally:
            pipeline.shutdown()

    app = FastAPI(
        title="Contactly",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    # Mount public routes (always)
    app.include_router(public.router)
    app.include_router(webhooks_whatsapp.router)
    app.include_router(contacts.router)

    # Mount worker routes only for worker role
    if role == "worker":
        app.include_router(worker.router)
        app.include_router(tasks_topics.router)

    return app
