"""Application lifecycle event handlers."""
import shutil
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.logging_config import get_logger
from api.settings import settings
from backend.services.sql.connection import load_connection_info
from backend.services.sql.errors import ConfigurationError


logger = get_logger(__name__)


def check_environment() -> None:
    """Warn early about configuration the backup endpoints will need.

    Nothing here is fatal: each request re-reads the settings and reports
    problems to the caller.
    """
    try:
        info = load_connection_info(settings.DATABASE_URL)
        logger.info("Backups target database %s on %s:%s", info.database, info.host, info.port)
    except ConfigurationError as e:
        logger.warning("Backup endpoints will fail: %s", e.message)

    for tool in (settings.PG_DUMP_PATH, settings.PSQL_PATH):
        if not shutil.which(tool):
            logger.warning("%s was not found on PATH; install postgresql-client", tool)

    if not settings.get_jwt_secret():
        logger.warning("JWT_SECRET is not configured; authenticated endpoints will answer 503")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run startup checks, then hand control to the application."""
    check_environment()
    yield
    logger.info("Shutting down %s", app.title)
