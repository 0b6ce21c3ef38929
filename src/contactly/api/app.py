"""ASGI entrypoint: `uvicorn contactly.api.app:app`."""

from contactly.api.factory import create_app

app = create_app()
