"""Middleware configuration for the FastAPI application."""
from fastapi import FastAPI
from .logging import setup_logging_middleware


def setup_middleware(app: FastAPI) -> None:
    """
    Register the application's HTTP middleware.

    Only the request logger exists today, and it is installed in DEBUG mode
    alone. Download streaming and uploads are never wrapped otherwise.

    Args:
        app: The FastAPI application instance
    """
    setup_logging_middleware(app)
