"""Typed errors raised by the SQL backup and restore pipeline.

Every error carries the HTTP status the API layer should answer with, so the
route handlers never need to inspect messages to pick a status code.
"""

from __future__ import annotations

from typing import Optional


class BackupError(Exception):
    """Base class for backup/restore failures."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(BackupError):
    """Missing or unparseable database connection configuration."""


class ToolUnavailableError(BackupError):
    """A required command-line tool (pg_dump, psql) is not installed."""

    def __init__(self, tool: str, package: str = "postgresql-client") -> None:
        super().__init__(
            f"{tool} is not available. Make sure {package} is installed and {tool} is on PATH."
        )
        self.tool = tool
        self.package = package


class ProcessExecutionError(BackupError):
    """An external tool exited non-zero with diagnostics that are not benign."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class ValidationError(BackupError):
    """Rejected input: missing file or unsupported backup format."""

    status_code = 400


class StreamError(BackupError):
    """Reading, writing or transforming a file failed mid-pipeline."""
