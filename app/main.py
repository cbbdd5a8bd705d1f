# Entry point for the FastAPI app
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.config.lifecycle import lifespan
from api.logging_config import configure_logging, get_logger
from api.middleware import setup_middleware
from api.routes import sql_backup
from api.settings import settings
from backend.services.sql.errors import BackupError

try:
    configure_logging(
        log_dir=settings.LOG_DIR,
        log_level=settings.LOG_LEVEL,
        debug=settings.DEBUG,
        log_filename=settings.LOG_FILENAME,
    )
except ValueError:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
logger = get_logger(__name__)

API_PREFIX = "/api/v1"


async def handle_backup_error(request: Request, exc: BackupError) -> JSONResponse:
    """Translate pipeline errors into `{"error": ...}` with their status code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTP errors with the same body shape as pipeline errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()))
    return JSONResponse(status_code=400, content={"error": f"{first.get('msg', 'Invalid request')} ({field})"})


def create_app() -> FastAPI:
    """Build the FastAPI application with routes, middleware and error handlers."""
    app = FastAPI(
        title="School Records Backup Service",
        description="PostgreSQL backup download and restore upload for the school-records application",
        version=settings.IMAGE_TAG,
        lifespan=lifespan,
    )

    setup_middleware(app)

    app.add_exception_handler(BackupError, handle_backup_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation)

    app.include_router(sql_backup.router, prefix=API_PREFIX)
    logger.debug("Registered backup routes (%s/backup/*)", API_PREFIX)

    # Health check endpoint.
    @app.get("/health")
    def check_health():
        return {"status": "OK"}

    # Get Image version.
    @app.get("/version")
    def get_version():
        return {"IMAGE_TAG": f"{settings.IMAGE_TAG}"}

    return app


app = create_app()
