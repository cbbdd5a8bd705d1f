"""Streaming gzip compression and decompression of backup files."""

from __future__ import annotations

import enum
import gzip
import shutil
import zlib
from pathlib import Path

from fastapi.concurrency import run_in_threadpool

from backend.services.sql.errors import StreamError


COPY_CHUNK_SIZE = 1024 * 1024
_GZIP_MAGIC = b"\x1f\x8b"


class Direction(str, enum.Enum):
    COMPRESS = "compress"
    DECOMPRESS = "decompress"


def looks_like_gzip(path: Path) -> bool:
    """Return True when the file starts with the gzip magic bytes.

    Args:
        path: File path.

    Returns:
        bool: True if the file appears to be gzip-compressed.
    """

    try:
        with open(path, "rb") as f:
            return f.read(2) == _GZIP_MAGIC
    except OSError:
        return False


def _copy(source: Path, destination: Path, direction: Direction) -> None:
    if direction is Direction.COMPRESS:
        with open(source, "rb") as f_in, gzip.open(destination, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out, COPY_CHUNK_SIZE)
    else:
        with gzip.open(source, "rb") as f_in, open(destination, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out, COPY_CHUNK_SIZE)


async def transform_file(source: Path, destination: Path, direction: Direction) -> Path:
    """Pipe a file through a gzip encoder or decoder into another file.

    The copy is chunked, so memory use does not depend on the file size. A
    failure at any stage aborts the whole copy; the partially written
    destination is left for the caller to delete.

    Args:
        source: File to read.
        destination: File to write.
        direction: COMPRESS or DECOMPRESS.

    Returns:
        Path: The destination path.

    Raises:
        StreamError: If reading, writing or the gzip transform fails.
    """

    try:
        await run_in_threadpool(_copy, Path(source), Path(destination), Direction(direction))
    except (OSError, EOFError, zlib.error) as exc:
        raise StreamError(f"Failed to {Direction(direction).value} {source}: {exc}") from exc
    return Path(destination)


async def gzip_file(source: Path, destination: Path) -> Path:
    return await transform_file(source, destination, Direction.COMPRESS)


async def gunzip_file(source: Path, destination: Path) -> Path:
    return await transform_file(source, destination, Direction.DECOMPRESS)
