"""Database backup and restore service for the school-records PostgreSQL database."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Dict, List, NoReturn, Optional, TypeVar

from api.logging_config import get_logger
from backend.services.sql.artifacts import ArtifactTracker, BackupArtifact, StageResult
from backend.services.sql.compression import gunzip_file, gzip_file, looks_like_gzip
from backend.services.sql.connection import ConnectionInfo, load_connection_info
from backend.services.sql.errors import BackupError, ValidationError
from backend.services.sql.process import Outcome, ProcessResult, ensure_success, run_tool
from backend.services.sql.sanitizer import SanitizeReport, sanitize_sql_file


logger = get_logger(__name__)

T = TypeVar("T")

RESTORE_EXTENSIONS = (".sql.gz", ".sql")

# pg_dump diagnostics that do not mean the dump failed.
DUMP_BENIGN_MARKERS = (
    "notice",
    "dumping",
    "warning: database owner will not be able to",
)

# psql diagnostics tolerated while replaying a dump.
RESTORE_BENIGN_MARKERS = (
    "notice",
    "warning",
    "already exists",
    "unrecognized configuration parameter",
    "does not exist, skipping",
)

MAX_REPORTED_WARNINGS = 50

RESET_SCHEMA_SQL = "DROP SCHEMA public CASCADE; CREATE SCHEMA public;"


def is_valid_restore_format(file_name: str) -> bool:
    """Return True for `.sql` and `.sql.gz` names (case-insensitive)."""

    lowered = str(file_name or "").lower()
    return lowered.endswith(RESTORE_EXTENSIONS)


def is_compressed_backup(path: Path) -> bool:
    """Compressed when named `.sql.gz` or when the content is gzip anyway."""

    return path.name.lower().endswith(".sql.gz") or looks_like_gzip(path)


def backup_file_name(app_identifier: str, now: Optional[datetime] = None) -> str:
    """Build the download name `backup_<app>_<timestamp>.sql.gz`.

    The timestamp is the UTC ISO form with ':' and '.' replaced and the
    fractional seconds dropped, e.g. `2024-05-01T10-15-30`.
    """

    moment = now or datetime.now(timezone.utc)
    return f"backup_{app_identifier}_{moment.strftime('%Y-%m-%dT%H-%M-%S')}.sql.gz"


async def _run_stage(step: Awaitable[T]) -> StageResult[T]:
    try:
        return StageResult.success(await step)
    except BackupError as exc:
        return StageResult.failure(exc)


def _abandon(artifacts: ArtifactTracker, stage: str, failed: StageResult, *outputs: Path) -> NoReturn:
    """Delete what a failed stage wrote, then raise its error."""

    logger.warning("Stopping after failed %s stage: %s", stage, failed.error.message)
    for path in outputs:
        artifacts.discard(path)
    raise failed.error


@dataclass
class RestoreSummary:
    """Information about a finished restore."""

    decompressed: bool
    total_lines: int
    removed_lines: int
    warnings: List[str] = field(default_factory=list)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


class BackupService:
    """Service for creating and restoring database backups."""

    def __init__(
        self,
        connection: ConnectionInfo,
        *,
        app_identifier: str = "gestion_escolar",
        pg_dump_path: str = "pg_dump",
        psql_path: str = "psql",
        temp_dir: Optional[str] = None,
        reset_schema: bool = True,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            connection: Parsed connection parameters of the target database
            app_identifier: Name embedded in backup file names
            pg_dump_path: pg_dump executable
            psql_path: psql executable
            temp_dir: Directory for temp artifacts (system temp dir when None)
            reset_schema: Drop and recreate the public schema before replaying
            timeout: Seconds before a tool is killed (None waits forever)
        """
        self.connection = connection
        self.app_identifier = app_identifier
        self.pg_dump_path = pg_dump_path
        self.psql_path = psql_path
        self.temp_dir = temp_dir
        self.reset_schema = reset_schema
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "BackupService":
        """Build a service from application settings.

        Raises:
            ConfigurationError: If DATABASE_URL is missing or invalid.
        """
        return cls(
            load_connection_info(settings.DATABASE_URL),
            app_identifier=settings.APP_IDENTIFIER,
            pg_dump_path=settings.PG_DUMP_PATH,
            psql_path=settings.PSQL_PATH,
            temp_dir=settings.BACKUP_TMP_DIR,
            reset_schema=settings.RESTORE_RESET_SCHEMA,
            timeout=settings.PROCESS_TIMEOUT_SECONDS,
        )

    def _tool_env(self) -> Dict[str, str]:
        # Password goes through the environment only, never argv.
        env = os.environ.copy()
        env["PGPASSWORD"] = self.connection.password
        return env

    def _connection_args(self) -> List[str]:
        info = self.connection
        return [
            f"--host={info.host}",
            f"--port={info.port}",
            f"--username={info.username}",
            f"--dbname={info.database}",
            "--no-password",
        ]

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def dump_database(self, destination: Path) -> Outcome:
        """Write a plain-SQL dump of the whole database to `destination`."""
        cmd = [
            self.pg_dump_path,
            *self._connection_args(),
            "--no-owner",      # Don't include ownership commands
            "--no-acl",        # Don't include access privileges
            "--format=plain",
            f"--file={destination}",
        ]

        logger.info("Dumping database %s from %s:%s", self.connection.database, self.connection.host, self.connection.port)
        result = await run_tool(cmd, env=self._tool_env(), timeout=self.timeout)
        return ensure_success("pg_dump", result, DUMP_BENIGN_MARKERS)

    async def create_backup(self) -> BackupArtifact:
        """
        Dump the database and gzip it into a uniquely named temp file.

        Returns:
            BackupArtifact: Compressed backup owned by the caller

        Raises:
            ToolUnavailableError: If pg_dump is not installed
            ProcessExecutionError: If pg_dump fails
            StreamError: If compression fails
        """
        file_name = backup_file_name(self.app_identifier)

        # The tracker is the safety net; each failed stage discards its own output.
        with ArtifactTracker(self.temp_dir) as artifacts:
            plain_path = artifacts.new_path(f"backup_{self.app_identifier}", ".sql")
            archive_path = artifacts.new_path(f"backup_{self.app_identifier}", ".sql.gz")

            dumped = await _run_stage(self.dump_database(plain_path))
            if not dumped.ok:
                _abandon(artifacts, "pg_dump", dumped, plain_path)

            compressed = await _run_stage(gzip_file(plain_path, archive_path))
            artifacts.discard(plain_path)
            if not compressed.ok:
                _abandon(artifacts, "compression", compressed, archive_path)

            artifacts.release(archive_path)

        logger.info("Backup created: %s (%s bytes)", file_name, archive_path.stat().st_size)
        return BackupArtifact(file_path=archive_path, file_name=file_name)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def reset_public_schema(self) -> Outcome:
        """Drop and recreate the public schema so the dump replays into an empty database."""
        cmd = [self.psql_path, *self._connection_args(), "--quiet", "-c", RESET_SCHEMA_SQL]

        logger.info("Resetting public schema of %s before restore", self.connection.database)
        result = await run_tool(cmd, env=self._tool_env(), timeout=self.timeout)
        return ensure_success("psql", result, ("notice",))

    async def replay_sql(self, script: Path) -> ProcessResult:
        """Feed a SQL script to psql through stdin, stopping at the first error."""
        cmd = [
            self.psql_path,
            *self._connection_args(),
            "--quiet",
            "--set=ON_ERROR_STOP=1",
        ]

        logger.info("Restoring backup into database %s", self.connection.database)
        result = await run_tool(cmd, env=self._tool_env(), stdin_path=script, timeout=self.timeout)
        ensure_success("psql", result, RESTORE_BENIGN_MARKERS)
        return result

    async def restore_backup(self, backup_file: Path) -> RestoreSummary:
        """
        Restore the database from a `.sql` or `.sql.gz` file.

        The backup file itself is not deleted; it belongs to the caller.

        Args:
            backup_file: Path to the backup file

        Returns:
            RestoreSummary: Line counts and tolerated warnings

        Raises:
            ValidationError: If the file is missing or not a SQL backup
            ToolUnavailableError: If psql is not installed
            ProcessExecutionError: If psql reports a real error
            StreamError: If decompressing or sanitizing fails
        """
        backup_file = Path(backup_file)
        if not backup_file.is_file():
            raise ValidationError("The backup file does not exist")
        if not is_valid_restore_format(backup_file.name):
            logger.error("Invalid backup file format: %s", backup_file)
            raise ValidationError("The backup must be a SQL file (.sql or .sql.gz)")

        compressed = is_compressed_backup(backup_file)

        with ArtifactTracker(self.temp_dir) as artifacts:
            sql_path = backup_file
            if compressed:
                logger.info("Decompressing backup %s", backup_file.name)
                decompressed_path = artifacts.new_path("restore", ".sql")
                decompressed = await _run_stage(gunzip_file(backup_file, decompressed_path))
                if not decompressed.ok:
                    _abandon(artifacts, "decompression", decompressed, decompressed_path)
                sql_path = decompressed.value

            filtered_path = artifacts.new_path("restore_filtered", ".sql")
            sanitized: StageResult[SanitizeReport] = await _run_stage(sanitize_sql_file(sql_path, filtered_path))
            if sql_path != backup_file:
                artifacts.discard(sql_path)
            if not sanitized.ok:
                _abandon(artifacts, "sanitizing", sanitized, filtered_path)
            report = sanitized.value

            if self.reset_schema:
                reset = await _run_stage(self.reset_public_schema())
                if not reset.ok:
                    _abandon(artifacts, "schema reset", reset, filtered_path)

            replayed = await _run_stage(self.replay_sql(report.path))
            artifacts.discard(report.path)
            if not replayed.ok:
                _abandon(artifacts, "replay", replayed)
            result = replayed.value

        warnings = [line.strip() for line in result.stderr.splitlines() if line.strip()][:MAX_REPORTED_WARNINGS]
        logger.info("Backup restored successfully into %s", self.connection.database)
        return RestoreSummary(
            decompressed=compressed,
            total_lines=report.total_lines,
            removed_lines=report.removed_lines,
            warnings=warnings,
        )
