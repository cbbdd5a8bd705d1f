"""Database backup download and restore upload routes.

Both endpoints require an administrator token. The backup is produced with
pg_dump, gzipped and streamed back as an attachment; the restore accepts a
`.sql` or `.sql.gz` upload and replays it with psql.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from api.logging_config import get_logger
from api.schemas.backup import ErrorResponse, RestoreResponse
from api.security import AuthenticatedUser, require_admin
from api.settings import settings
from api.transfer import BackupDownloadResponse
from api.uploads import store_upload
from backend.services.sql.artifacts import delete_artifact
from backend.services.sql.backup_service import BackupService, is_valid_restore_format
from backend.services.sql.errors import BackupError, ValidationError


logger = get_logger(__name__)

router = APIRouter(
    prefix="/backup",
    tags=["Database Backup & Restore"]
)

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def get_backup_service() -> BackupService:
    """Build the service from the current settings (fails fast without DATABASE_URL)."""
    return BackupService.from_settings(settings)


@router.get(
    "/download",
    responses={200: {"content": {"application/gzip": {}}, "description": "Compressed SQL dump"}, **_ERROR_RESPONSES},
)
async def download_backup(user: AuthenticatedUser = Depends(require_admin)):
    """
    Generate and download a compressed backup of the database.

    **Requires the administrator role.**

    Returns:
        The `.sql.gz` dump as an attachment
    """
    try:
        logger.info("Backup download requested by user %s", user.user_id)
        backup_service = get_backup_service()
        artifact = await backup_service.create_backup()
    except BackupError:
        raise
    except Exception as e:
        logger.exception("Unexpected error while generating backup")
        raise HTTPException(status_code=500, detail=f"Error generating database backup: {str(e)}")

    return BackupDownloadResponse(artifact)


@router.post("/upload", response_model=RestoreResponse, responses=_ERROR_RESPONSES)
async def upload_backup(
    backup: Optional[UploadFile] = File(None, description="Backup file (.sql or .sql.gz)"),
    user: AuthenticatedUser = Depends(require_admin),
):
    """
    Upload a backup file and restore the database from it.

    **⚠️ WARNING: This will overwrite the current database!**

    **Requires the administrator role.**
    """
    if backup is None or not backup.filename:
        raise ValidationError("No backup file was uploaded.")

    backup_service = get_backup_service()
    uploaded = await store_upload(
        backup,
        upload_dir=settings.BACKUP_TMP_DIR,
        max_bytes=settings.MAX_UPLOAD_BYTES,
    )

    try:
        if not is_valid_restore_format(uploaded.original_name):
            logger.warning("Rejected backup upload with invalid name: %s", uploaded.original_name)
            raise ValidationError("The file must be a SQL backup (.sql or .sql.gz).")

        logger.info(
            "Restoring backup %s (stored as %s) requested by user %s",
            uploaded.original_name,
            uploaded.file_path,
            user.user_id,
        )
        summary = await backup_service.restore_backup(uploaded.file_path)
    except BackupError:
        raise
    except Exception as e:
        logger.exception("Unexpected error while restoring backup")
        raise HTTPException(status_code=500, detail=f"Error restoring database backup: {str(e)}")
    finally:
        delete_artifact(uploaded.file_path)

    logger.info(
        "Restore finished: %s lines, %s configuration statements removed, %s warnings",
        summary.total_lines,
        summary.removed_lines,
        summary.warning_count,
    )
    return RestoreResponse(message="Backup restored successfully.")
