"""Tests for the backup and restore pipeline."""

import gzip
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, patch

import pytest

from backend.services.sql.artifacts import ArtifactTracker
from backend.services.sql.backup_service import (
    BackupService,
    backup_file_name,
    is_valid_restore_format,
)
from backend.services.sql.errors import (
    ConfigurationError,
    ProcessExecutionError,
    StreamError,
    ToolUnavailableError,
    ValidationError,
)
from backend.services.sql.process import ProcessResult


DUMP_SQL = (
    "SET statement_timeout = 0;\n"
    "SET transaction_timeout = '5min';\n"
    "SET client_encoding = 'UTF8';\n"
    "CREATE TABLE public.alumnos (id integer, nombre text);\n"
    "INSERT INTO public.alumnos VALUES (1, 'Ana');\n"
)


class FakeTools:
    """Stands in for run_tool and records every invocation."""

    def __init__(self, results: Optional[dict] = None, missing: Optional[str] = None, dump_sql: str = DUMP_SQL):
        self.results = results or {}
        self.missing = missing
        self.dump_sql = dump_sql
        self.calls: List[dict] = []

    async def __call__(self, command, *, env, stdin_path=None, timeout=None):
        tool = Path(command[0]).name
        call = {
            "tool": tool,
            "command": list(command),
            "env": dict(env),
            "stdin": stdin_path.read_text(encoding="utf-8") if stdin_path else None,
        }
        self.calls.append(call)

        if tool == self.missing:
            raise ToolUnavailableError(tool)

        if tool == "pg_dump":
            target = next(arg.split("=", 1)[1] for arg in command if arg.startswith("--file="))
            Path(target).write_text(self.dump_sql, encoding="utf-8")
        if tool == "psql" and "-c" in command:
            return self.results.get("reset", ProcessResult(0, "", ""))
        return self.results.get(tool, ProcessResult(0, "", ""))

    def tools(self):
        return [call["tool"] for call in self.calls]


@pytest.fixture
def service(connection, work_dir):
    return BackupService(connection, temp_dir=str(work_dir))


@pytest.fixture
def incoming(temp_dir):
    path = temp_dir / "incoming"
    path.mkdir()
    return path


class TestHelpers:
    """Tests for naming and format helpers."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("backup.sql", True),
            ("BACKUP.SQL.GZ", True),
            ("backup_gestion_escolar_2024-05-01T10-15-30.sql.gz", True),
            ("backup.sql.gz.bak", False),
            ("backup.txt", False),
            ("backup.gz", False),
            ("", False),
        ],
    )
    def test_is_valid_restore_format(self, name, expected):
        assert is_valid_restore_format(name) is expected

    def test_backup_file_name(self):
        moment = datetime(2024, 5, 1, 10, 15, 30, 123000, tzinfo=timezone.utc)

        assert backup_file_name("gestion_escolar", moment) == "backup_gestion_escolar_2024-05-01T10-15-30.sql.gz"

    def test_from_settings_requires_database_url(self, monkeypatch):
        from api.settings import settings

        monkeypatch.setattr(settings, "DATABASE_URL", None)

        with pytest.raises(ConfigurationError):
            BackupService.from_settings(settings)


class TestCreateBackup:
    """Tests for BackupService.create_backup."""

    @pytest.mark.asyncio
    async def test_success(self, service, work_dir):
        tools = FakeTools()

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            artifact = await service.create_backup()

        assert artifact.file_name.startswith("backup_gestion_escolar_")
        assert artifact.file_name.endswith(".sql.gz")
        assert gzip.decompress(artifact.file_path.read_bytes()).decode("utf-8") == DUMP_SQL
        # Only the archive survives; the plain dump is gone.
        assert list(work_dir.iterdir()) == [artifact.file_path]

        command = tools.calls[0]["command"]
        assert "--no-owner" in command
        assert "--no-acl" in command
        assert "--host=db.internal" in command
        assert "--dbname=gestion_escolar" in command
        assert "s3cret" not in " ".join(command)
        assert tools.calls[0]["env"]["PGPASSWORD"] == "s3cret"

    @pytest.mark.asyncio
    async def test_concurrent_backups_use_distinct_files(self, service):
        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools()):
            first = await service.create_backup()
            second = await service.create_backup()

        assert first.file_path != second.file_path

    @pytest.mark.asyncio
    async def test_archive_is_smaller_than_dump(self, service):
        large_dump = DUMP_SQL + "".join(
            f"INSERT INTO public.alumnos VALUES ({i}, 'Alumno {i}');\n" for i in range(2, 2000)
        )

        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools(dump_sql=large_dump)):
            artifact = await service.create_backup()

        assert artifact.file_path.stat().st_size < len(large_dump.encode("utf-8"))
        assert gzip.decompress(artifact.file_path.read_bytes()).decode("utf-8") == large_dump

    @pytest.mark.asyncio
    async def test_warnings_still_produce_backup(self, service):
        tools = FakeTools({"pg_dump": ProcessResult(1, "", "pg_dump: NOTICE: dumping contents of table alumnos\n")})

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            artifact = await service.create_backup()

        assert artifact.file_path.exists()

    @pytest.mark.asyncio
    async def test_dump_failure_leaves_nothing_behind(self, service, work_dir):
        tools = FakeTools({"pg_dump": ProcessResult(1, "", "pg_dump: error: connection to server failed\n")})

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            with pytest.raises(ProcessExecutionError) as exc_info:
                await service.create_backup()

        assert "connection to server failed" in exc_info.value.message
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_pg_dump(self, service, work_dir):
        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools(missing="pg_dump")):
            with pytest.raises(ToolUnavailableError) as exc_info:
                await service.create_backup()

        assert "pg_dump" in exc_info.value.message
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_compression_failure_leaves_nothing_behind(self, service, work_dir):
        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools()), patch(
            "backend.services.sql.backup_service.gzip_file",
            new=AsyncMock(side_effect=StreamError("disk full")),
        ):
            with pytest.raises(StreamError):
                await service.create_backup()

        assert list(work_dir.iterdir()) == []


class TestRestoreBackup:
    """Tests for BackupService.restore_backup."""

    @pytest.mark.asyncio
    async def test_restore_compressed(self, service, work_dir, incoming):
        upload = incoming / "backup.sql.gz"
        upload.write_bytes(gzip.compress(DUMP_SQL.encode("utf-8")))
        tools = FakeTools()

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            summary = await service.restore_backup(upload)

        assert summary.decompressed is True
        assert summary.removed_lines == 2
        assert tools.tools() == ["psql", "psql"]

        reset, replay = tools.calls
        assert "DROP SCHEMA public CASCADE; CREATE SCHEMA public;" in reset["command"]
        assert "--set=ON_ERROR_STOP=1" in replay["command"]
        assert "transaction_timeout" not in replay["stdin"]
        assert "statement_timeout" not in replay["stdin"]
        assert "CREATE TABLE public.alumnos" in replay["stdin"]
        assert replay["env"]["PGPASSWORD"] == "s3cret"

        # Temp files are gone; the uploaded file belongs to the caller.
        assert list(work_dir.iterdir()) == []
        assert upload.exists()

    @pytest.mark.asyncio
    async def test_restore_plain_sql(self, service, work_dir, incoming):
        upload = incoming / "backup.SQL"
        upload.write_text(DUMP_SQL, encoding="utf-8")

        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools()):
            summary = await service.restore_backup(upload)

        assert summary.decompressed is False
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_gzip_content_with_sql_name_is_decompressed(self, service, incoming):
        upload = incoming / "backup.sql"
        upload.write_bytes(gzip.compress(DUMP_SQL.encode("utf-8")))
        tools = FakeTools()

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            summary = await service.restore_backup(upload)

        assert summary.decompressed is True
        assert "CREATE TABLE public.alumnos" in tools.calls[-1]["stdin"]

    @pytest.mark.asyncio
    async def test_without_schema_reset(self, connection, work_dir, incoming):
        service = BackupService(connection, temp_dir=str(work_dir), reset_schema=False)
        upload = incoming / "backup.sql"
        upload.write_text(DUMP_SQL, encoding="utf-8")
        tools = FakeTools()

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            await service.restore_backup(upload)

        assert len(tools.calls) == 1

    @pytest.mark.asyncio
    async def test_warnings_are_reported(self, service, incoming):
        upload = incoming / "backup.sql"
        upload.write_text(DUMP_SQL, encoding="utf-8")
        stderr = 'psql:<stdin>:4: NOTICE:  relation "alumnos" already exists, skipping\n'
        tools = FakeTools({"psql": ProcessResult(3, "", stderr)})

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            summary = await service.restore_backup(upload)

        assert summary.warning_count == 1

    @pytest.mark.asyncio
    async def test_missing_file(self, service, incoming):
        with pytest.raises(ValidationError) as exc_info:
            await service.restore_backup(incoming / "nope.sql")

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_wrong_extension(self, service, incoming):
        upload = incoming / "backup.txt"
        upload.write_text(DUMP_SQL, encoding="utf-8")
        tools = FakeTools()

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            with pytest.raises(ValidationError):
                await service.restore_backup(upload)

        assert tools.calls == []

    @pytest.mark.asyncio
    async def test_corrupt_archive_never_touches_database(self, service, work_dir, incoming):
        upload = incoming / "backup.sql.gz"
        upload.write_bytes(b"\x1f\x8b definitely not a gzip stream")
        tools = FakeTools()

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            with pytest.raises(StreamError):
                await service.restore_backup(upload)

        assert tools.calls == []
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_undecodable_script_never_touches_database(self, service, work_dir, incoming):
        upload = incoming / "backup.sql"
        upload.write_bytes(b"CREATE TABLE x (id int);\n\xff\xfe\xfa")
        tools = FakeTools()

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            with pytest.raises(StreamError):
                await service.restore_backup(upload)

        assert tools.calls == []
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_replay_failure_cleans_up(self, service, work_dir, incoming):
        upload = incoming / "backup.sql.gz"
        upload.write_bytes(gzip.compress(DUMP_SQL.encode("utf-8")))
        stderr = 'psql:<stdin>:4: ERROR:  syntax error at or near "CREAT"\n'
        tools = FakeTools({"psql": ProcessResult(3, "", stderr)})

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            with pytest.raises(ProcessExecutionError) as exc_info:
                await service.restore_backup(upload)

        assert exc_info.value.message == f"psql failed with exit code 3: {stderr.strip()}"
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_psql(self, service, work_dir, incoming):
        upload = incoming / "backup.sql"
        upload.write_text(DUMP_SQL, encoding="utf-8")

        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools(missing="psql")):
            with pytest.raises(ToolUnavailableError) as exc_info:
                await service.restore_backup(upload)

        assert "psql is not available" in exc_info.value.message
        assert list(work_dir.iterdir()) == []


class TestStageCleanup:
    """Each failed stage removes its own output without relying on the tracker's exit cleanup."""

    @pytest.fixture(autouse=True)
    def no_tracker_cleanup(self, monkeypatch):
        monkeypatch.setattr(ArtifactTracker, "cleanup", lambda self: None)

    @pytest.mark.asyncio
    async def test_successful_backup_keeps_only_archive(self, service, work_dir):
        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools()):
            artifact = await service.create_backup()

        assert list(work_dir.iterdir()) == [artifact.file_path]

    @pytest.mark.asyncio
    async def test_dump_failure(self, service, work_dir):
        tools = FakeTools({"pg_dump": ProcessResult(1, "", "pg_dump: error: permission denied for table notas\n")})

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            with pytest.raises(ProcessExecutionError):
                await service.create_backup()

        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_partial_archive_is_removed(self, service, work_dir):
        async def partial_gzip(source, destination):
            Path(destination).write_bytes(b"\x1f\x8b partial")
            raise StreamError("No space left on device")

        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools()), patch(
            "backend.services.sql.backup_service.gzip_file", new=partial_gzip
        ):
            with pytest.raises(StreamError):
                await service.create_backup()

        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_decompression_failure(self, service, work_dir, incoming):
        upload = incoming / "backup.sql.gz"
        upload.write_bytes(gzip.compress(DUMP_SQL.encode("utf-8"))[:40])

        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools()):
            with pytest.raises(StreamError):
                await service.restore_backup(upload)

        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_sanitize_failure(self, service, work_dir, incoming):
        upload = incoming / "backup.sql.gz"
        upload.write_bytes(gzip.compress("INSERT INTO cursos VALUES ('Año');\n".encode("latin-1")))

        with patch("backend.services.sql.backup_service.run_tool", new=FakeTools()):
            with pytest.raises(StreamError):
                await service.restore_backup(upload)

        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_schema_reset_failure(self, service, work_dir, incoming):
        upload = incoming / "backup.sql"
        upload.write_text(DUMP_SQL, encoding="utf-8")
        tools = FakeTools({"reset": ProcessResult(2, "", 'psql: error: FATAL:  database "gestion_escolar" does not exist\n')})

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            with pytest.raises(ProcessExecutionError):
                await service.restore_backup(upload)

        assert len(tools.calls) == 1
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_replay_failure(self, service, work_dir, incoming):
        upload = incoming / "backup.sql.gz"
        upload.write_bytes(gzip.compress(DUMP_SQL.encode("utf-8")))
        tools = FakeTools({"psql": ProcessResult(3, "", 'psql:<stdin>:4: ERROR:  relation "cursos" does not exist\n')})

        with patch("backend.services.sql.backup_service.run_tool", new=tools):
            with pytest.raises(ProcessExecutionError):
                await service.restore_backup(upload)

        assert list(work_dir.iterdir()) == []
