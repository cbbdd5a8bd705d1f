"""Ownership and cleanup of temporary backup artifacts.

Every temp file created by an operation is registered with an
`ArtifactTracker`. A stage hands a file to the next stage by path; when the
operation settles, whatever is still tracked is deleted. Cleanup is
best-effort and never replaces the error that triggered it.
"""

from __future__ import annotations

import secrets
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Generic, List, Optional, TypeVar, Union

from api.logging_config import get_logger
from backend.services.sql.errors import BackupError


logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackupArtifact:
    """Finished, compressed backup waiting to be sent to the client."""

    file_path: Path
    file_name: str


@dataclass(frozen=True)
class UploadedArtifact:
    """Backup file stored on disk by the upload layer."""

    file_path: Path
    original_name: str


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """Result of one pipeline stage: a value, or the error that stopped it."""

    value: Optional[T] = None
    error: Optional[BackupError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "StageResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BackupError) -> "StageResult[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def unique_token() -> str:
    """Timestamp plus random suffix, unique across concurrent operations."""

    return f"{datetime.now().strftime('%Y%m%d%H%M%S%f')}-{secrets.token_hex(4)}"


def delete_artifact(path: Optional[Union[str, Path]]) -> bool:
    """Delete a file, logging instead of raising on failure.

    Args:
        path: File to delete; None is ignored.

    Returns:
        bool: True if the file is gone afterwards.
    """

    if not path:
        return True
    target = Path(path)
    try:
        target.unlink()
        logger.debug("Deleted artifact %s", target)
        return True
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.warning("Failed to delete temp file %s: %s", target, exc)
        return False


class ArtifactTracker:
    """Tracks the temp files of one backup or restore operation."""

    def __init__(self, base_dir: Optional[Union[str, Path]] = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else Path(tempfile.gettempdir())
        self._paths: List[Path] = []

    def __enter__(self) -> "ArtifactTracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    @property
    def paths(self) -> List[Path]:
        return list(self._paths)

    def new_path(self, prefix: str, suffix: str) -> Path:
        """Reserve a unique path under the base directory and track it."""

        self.base_dir.mkdir(parents=True, exist_ok=True)
        return self.track(self.base_dir / f"{prefix}_{unique_token()}{suffix}")

    def track(self, path: Union[str, Path]) -> Path:
        target = Path(path)
        if target not in self._paths:
            self._paths.append(target)
        return target

    def release(self, path: Union[str, Path]) -> Path:
        """Stop tracking a file whose ownership moved to someone else."""

        target = Path(path)
        if target in self._paths:
            self._paths.remove(target)
        return target

    def discard(self, path: Union[str, Path]) -> bool:
        """Delete a tracked file now."""

        return delete_artifact(self.release(path))

    def cleanup(self) -> None:
        """Delete every file still tracked, newest first."""

        while self._paths:
            delete_artifact(self._paths.pop())
