"""Middleware registration."""

from fastapi import FastAPI

from loretta.config import Settings
from loretta.middleware.error_handler import setup_error_handlers
from loretta.middleware.logging import setup_logging
from loretta.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging, error handlers and request ids.

    Starlette executes middleware in reverse-add order (last added = outermost).
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
