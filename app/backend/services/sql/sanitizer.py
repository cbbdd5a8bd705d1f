"""Line-based filtering of SQL dumps before replay.

Dumps taken on a newer or differently configured PostgreSQL server may set
session parameters the restore target does not know. Those `SET` /
`SELECT set_config(...)` lines are dropped; everything else passes through
untouched and in order.

This is a textual filter, not a SQL parser: a statement spanning several lines
or a string literal mentioning a denylisted parameter is matched line by line.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence, Tuple

from fastapi.concurrency import run_in_threadpool

from api.logging_config import get_logger
from backend.services.sql.errors import StreamError


logger = get_logger(__name__)

DENYLISTED_PARAMETERS: Tuple[str, ...] = (
    "transaction_timeout",
    "idle_in_transaction_session_timeout",
    "lock_timeout",
    "statement_timeout",
    "search_path",
)

CONFIG_STATEMENT_PREFIXES: Tuple[str, ...] = ("SET ", "SELECT SET_CONFIG")


@dataclass(frozen=True)
class SanitizeReport:
    """Outcome of sanitizing one SQL script."""

    path: Path
    total_lines: int
    removed_lines: int


def should_drop_line(line: str, parameters: Iterable[str] = DENYLISTED_PARAMETERS) -> bool:
    """Return True for configuration statements that set a denylisted parameter.

    Args:
        line: One line of SQL.
        parameters: Lower-case parameter names to drop.

    Returns:
        bool: Whether the line should be removed.
    """

    stripped = line.strip()
    if not stripped.upper().startswith(CONFIG_STATEMENT_PREFIXES):
        return False
    lowered = stripped.lower()
    return any(param in lowered for param in parameters)


def sanitize_sql_text(text: str, parameters: Sequence[str] = DENYLISTED_PARAMETERS) -> Tuple[str, int, int]:
    """Filter a SQL script held in memory.

    Args:
        text: Full script.
        parameters: Lower-case parameter names to drop.

    Returns:
        Tuple[str, int, int]: (filtered text, total lines, removed lines)
    """

    lines = text.split("\n")
    kept = []
    for line in lines:
        if should_drop_line(line, parameters):
            logger.info("Dropping configuration statement: %s", line.strip()[:80])
            continue
        kept.append(line)
    return "\n".join(kept), len(lines), len(lines) - len(kept)


def _sanitize_file(source: Path, destination: Path) -> SanitizeReport:
    with open(source, "r", encoding="utf-8", newline="") as f:
        content = f.read()

    filtered, total, removed = sanitize_sql_text(content)

    with open(destination, "w", encoding="utf-8", newline="") as f:
        f.write(filtered)

    return SanitizeReport(path=destination, total_lines=total, removed_lines=removed)


async def sanitize_sql_file(source: Path, destination: Path) -> SanitizeReport:
    """Write a filtered copy of a SQL script.

    The script must be UTF-8. A dump in another encoding (e.g. from a LATIN1
    database) is rejected with StreamError instead of being decoded lossily.

    Args:
        source: Decompressed SQL script.
        destination: Path for the filtered script.

    Returns:
        SanitizeReport: Destination path and line counts.

    Raises:
        StreamError: If the script cannot be read, decoded or written.
    """

    try:
        report = await run_in_threadpool(_sanitize_file, Path(source), Path(destination))
    except (OSError, UnicodeDecodeError) as exc:
        raise StreamError(f"Failed to sanitize SQL script {source}: {exc}") from exc

    logger.info(
        "Sanitized SQL script: %s lines read, %s removed",
        report.total_lines,
        report.removed_lines,
    )
    return report
