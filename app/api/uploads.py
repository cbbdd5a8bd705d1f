"""Storage of uploaded backup files on local disk.

Stands in for a multipart middleware: the upload is copied to a uniquely named
file in the backup temp directory, keeping the `.sql` / `.sql.gz` extension of
the original name so the restore pipeline can tell the formats apart.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import BinaryIO, Optional

from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

from api.logging_config import get_logger
from backend.services.sql.artifacts import UploadedArtifact, delete_artifact, unique_token
from backend.services.sql.errors import StreamError, ValidationError


logger = get_logger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024


def upload_extension(original_name: str) -> str:
    """Return the stored extension for an uploaded file name."""

    lowered = original_name.lower()
    if lowered.endswith(".sql.gz"):
        return ".sql.gz"
    if lowered.endswith(".sql"):
        return ".sql"
    suffix = Path(lowered).suffix
    return suffix if suffix else ".bin"


def _copy_limited(source: BinaryIO, destination: Path, max_bytes: int) -> int:
    written = 0
    with open(destination, "wb") as out:
        while True:
            chunk = source.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                raise ValidationError(
                    f"The backup file exceeds the maximum upload size of {max_bytes // (1024 * 1024)} MB"
                )
            out.write(chunk)
    return written


async def store_upload(
    upload: UploadFile,
    *,
    upload_dir: Optional[str] = None,
    max_bytes: int = 500 * 1024 * 1024,
) -> UploadedArtifact:
    """Copy an uploaded file to local disk.

    Args:
        upload: Multipart file from the request.
        upload_dir: Target directory (system temp dir when None).
        max_bytes: Maximum accepted size.

    Returns:
        UploadedArtifact: Stored path and original file name.

    Raises:
        ValidationError: If the file is larger than max_bytes.
        StreamError: If the file cannot be written.
    """

    original_name = upload.filename or ""
    directory = Path(upload_dir) if upload_dir else Path(tempfile.gettempdir())
    target = directory / f"backup_upload_{unique_token()}{upload_extension(original_name)}"

    try:
        directory.mkdir(parents=True, exist_ok=True)
        size = await run_in_threadpool(_copy_limited, upload.file, target, max_bytes)
    except ValidationError:
        delete_artifact(target)
        raise
    except OSError as exc:
        delete_artifact(target)
        raise StreamError(f"Failed to store uploaded backup: {exc}") from exc

    logger.info("Stored uploaded backup %s as %s (%s bytes)", original_name, target, size)
    return UploadedArtifact(file_path=target, original_name=original_name)

