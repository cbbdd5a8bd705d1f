"""Request logging middleware for debugging."""

from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import FastAPI, Request

from api.logging_config import get_logger
from api.settings import settings


logger = get_logger(__name__)

_SENSITIVE_HEADER_NAMES = {
    "authorization",
    "cookie",
    "set-cookie",
}

_SENSITIVE_JSON_KEYS = {
    "password",
    "token",
    "refreshtoken",
    "access_token",
}

_BINARY_CONTENT_TYPES = (
    "application/gzip",
    "application/octet-stream",
    "multipart/form-data",
)


def _redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with credentials replaced by `<redacted>`."""

    return {
        key: "<redacted>" if key.lower() in _SENSITIVE_HEADER_NAMES else value
        for key, value in (headers or {}).items()
    }


def _redact_json(value: Any) -> Any:
    """Recursively redact secret fields in a JSON-like value.

    Args:
        value: JSON-like value.

    Returns:
        Any: Redacted value.
    """

    if isinstance(value, dict):
        return {
            k: "<redacted>" if str(k).lower() in _SENSITIVE_JSON_KEYS else _redact_json(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact_json(v) for v in value]
    return value


async def log_requests(request: Request, call_next):
    """
    Log request and response metadata for debugging purposes.

    Upload bodies and backup downloads are never read here: they can be
    hundreds of megabytes and the download is streamed straight from disk.
    """
    if request.url.path == "/health":
        return await call_next(request)

    logger.debug("Received request: %s %s", request.method, request.url)
    logger.debug("Request headers: %s", _redact_headers(dict(request.headers)))

    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" in content_type:
        body = await request.body()
        try:
            logger.debug("Request body: %s", json.dumps(_redact_json(json.loads(body)), ensure_ascii=False)[:8192])
        except ValueError:
            logger.debug("Request body: <invalid json body: %s bytes>", len(body))
    elif any(kind in content_type for kind in _BINARY_CONTENT_TYPES):
        logger.debug("Request body: <binary upload, %s bytes>", request.headers.get("content-length", "?"))

    response = await call_next(request)

    logger.debug("Response status: %s", response.status_code)
    logger.debug("Response headers: %s", _redact_headers(dict(response.headers)))
    return response


def setup_logging_middleware(app: FastAPI) -> None:
    """
    Register the request logging middleware when DEBUG is enabled.

    Args:
        app: The FastAPI application instance
    """
    if settings.DEBUG:
        app.middleware("http")(log_requests)
