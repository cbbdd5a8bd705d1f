"""Child-process execution and exit-status classification for database tools.

Spawning and classification are kept apart: `run_tool` only runs a command and
captures its streams, `classify_result` decides what the captured output means.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from api.logging_config import get_logger
from backend.services.sql.errors import ProcessExecutionError, StreamError, ToolUnavailableError


logger = get_logger(__name__)

STDIN_CHUNK_SIZE = 64 * 1024


class Outcome(str, enum.Enum):
    """Classification of a finished tool invocation."""

    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    FATAL = "fatal"


@dataclass(frozen=True)
class ProcessResult:
    """Captured output of a finished child process."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


def classify_result(result: ProcessResult, benign_markers: Iterable[str]) -> Outcome:
    """Classify a tool result from its exit code and stderr text.

    A non-zero exit is downgraded to a warning only when every non-blank
    stderr line contains one of the benign markers (case-insensitive).

    Args:
        result: Captured process result.
        benign_markers: Substrings that identify harmless diagnostics.

    Returns:
        Outcome: SUCCESS, SUCCESS_WITH_WARNINGS or FATAL.
    """

    if result.exit_code == 0:
        return Outcome.SUCCESS

    markers = [m.lower() for m in benign_markers if m]
    lines = [line.strip().lower() for line in result.stderr.splitlines() if line.strip()]
    if not lines:
        # A silent non-zero exit is a failure; nothing shows it to be benign.
        return Outcome.FATAL

    if all(any(marker in line for marker in markers) for line in lines):
        return Outcome.SUCCESS_WITH_WARNINGS
    return Outcome.FATAL


def summarize_error(output: str, limit: int = 500) -> str:
    """Return the most relevant line of a tool's error output.

    Args:
        output: Combined stdout/stderr text.
        limit: Maximum length when no ERROR/FATAL line is found.

    Returns:
        str: First ERROR/FATAL line, or the truncated output.
    """

    for line in output.splitlines():
        if "ERROR" in line or "FATAL" in line or "error:" in line:
            return line.strip()
    return output.strip()[:limit]


async def _feed_stdin(stream: asyncio.StreamWriter, stdin_path: Path) -> None:
    """Stream a file into a child's stdin, tolerating an early exit."""

    try:
        with open(stdin_path, "rb") as source:
            while True:
                chunk = source.read(STDIN_CHUNK_SIZE)
                if not chunk:
                    break
                stream.write(chunk)
                await stream.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The tool stopped reading; its stderr explains why.
        logger.debug("Child process closed stdin before %s was fully written", stdin_path)
        return
    finally:
        try:
            stream.close()
        except (BrokenPipeError, ConnectionResetError):
            pass


async def run_tool(
    command: Sequence[str],
    *,
    env: Mapping[str, str],
    stdin_path: Optional[Path] = None,
    timeout: Optional[float] = None,
) -> ProcessResult:
    """Run an external command and capture its output.

    Args:
        command: Executable followed by its arguments.
        env: Full environment for the child process.
        stdin_path: Optional file streamed into the child's standard input.
        timeout: Seconds before the child is killed; None waits forever.

    Returns:
        ProcessResult: Exit code and decoded stdout/stderr.

    Raises:
        ToolUnavailableError: If the executable cannot be found.
        ProcessExecutionError: If the process cannot be spawned or times out.
    """

    tool = Path(command[0]).name
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            env=dict(env),
            stdin=asyncio.subprocess.PIPE if stdin_path is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ToolUnavailableError(tool) from exc
    except OSError as exc:
        raise ProcessExecutionError(f"Failed to run {tool}: {exc}") from exc

    async def _collect():
        tasks = [process.stdout.read(), process.stderr.read()]
        if stdin_path is not None:
            tasks.append(_feed_stdin(process.stdin, stdin_path))
        outputs = await asyncio.gather(*tasks)
        await process.wait()
        return outputs[0], outputs[1]

    try:
        stdout, stderr = await asyncio.wait_for(_collect(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        if process.returncode is None:
            process.kill()
        await process.wait()
        raise ProcessExecutionError(
            f"{tool} did not finish within {timeout} seconds and was terminated",
            exit_code=process.returncode,
        ) from exc
    except OSError as exc:
        if process.returncode is None:
            process.kill()
        await process.wait()
        raise StreamError(f"Failed to stream {stdin_path} into {tool}: {exc}") from exc

    return ProcessResult(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=(stdout or b"").decode("utf-8", errors="replace"),
        stderr=(stderr or b"").decode("utf-8", errors="replace"),
    )


def ensure_success(tool: str, result: ProcessResult, benign_markers: Iterable[str]) -> Outcome:
    """Raise for a fatal result, log warnings otherwise.

    Args:
        tool: Tool name used in messages.
        result: Captured process result.
        benign_markers: Substrings that identify harmless diagnostics.

    Returns:
        Outcome: SUCCESS or SUCCESS_WITH_WARNINGS.

    Raises:
        ProcessExecutionError: If the result is classified as fatal.
    """

    outcome = classify_result(result, benign_markers)
    if outcome is Outcome.FATAL:
        output = result.combined_output
        logger.error("%s failed with exit code %s: %s", tool, result.exit_code, output)
        raise ProcessExecutionError(
            f"{tool} failed with exit code {result.exit_code}: {summarize_error(output) or 'no output'}",
            exit_code=result.exit_code,
            output=output,
        )
    if outcome is Outcome.SUCCESS_WITH_WARNINGS:
        logger.warning("%s exited with code %s but only reported warnings: %s", tool, result.exit_code, result.stderr[:200])
    return outcome
