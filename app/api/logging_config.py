"""Logging configuration for the school-records backup service.

Configures the root logger with:
- A custom TRACE level below DEBUG.
- Console output.
- Size-rotated file output under LOG_DIR plus an error-only file, so failed
  backups and restores can be triaged without scanning the full log.

Calling `configure_logging` more than once is a no-op.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


TRACE_LEVEL_NUM = 5

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _install_trace_level() -> None:
    """Register the TRACE level name and a `Logger.trace` helper."""

    if logging.getLevelName(TRACE_LEVEL_NUM) != "TRACE":
        logging.addLevelName(TRACE_LEVEL_NUM, "TRACE")

    if not hasattr(logging.Logger, "trace"):

        def trace(self: logging.Logger, message: str, *args, **kwargs) -> None:
            if self.isEnabledFor(TRACE_LEVEL_NUM):
                self._log(TRACE_LEVEL_NUM, message, args, **kwargs)

        logging.Logger.trace = trace  # type: ignore[attr-defined]


def resolve_level(log_level: str, debug: bool = False) -> int:
    """Translate a level name into its numeric value.

    Args:
        log_level: Level name (TRACE, DEBUG, INFO, ...). Empty picks a default.
        debug: Default to DEBUG instead of INFO when no name is given.

    Returns:
        int: Numeric log level.

    Raises:
        ValueError: When the name is not a known level.
    """

    name = str(log_level or "").strip().upper() or ("DEBUG" if debug else "INFO")
    if name == "TRACE":
        return TRACE_LEVEL_NUM
    level = getattr(logging, name, None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    return level


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    *,
    log_dir: str = "/app/logs",
    log_level: str = "INFO",
    debug: bool = False,
    log_filename: str = "school-backup.log",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Configure application-wide logging.

    Args:
        log_dir: Directory for log files.
        log_level: Root level name (TRACE, DEBUG, INFO, ...).
        debug: Use DEBUG when log_level is empty.
        log_filename: Main log file name inside log_dir.
        max_bytes: Rotate a file after this size.
        backup_count: Rotated files to keep.

    Raises:
        ValueError: When log_level is invalid.
    """

    _install_trace_level()

    root = logging.getLogger()
    if getattr(root, "_school_backup_logging_configured", False):
        return

    level = resolve_level(log_level, debug)
    root.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    main_path = Path(log_dir) / log_filename
    error_path = main_path.with_name(f"{main_path.stem}.error{main_path.suffix or '.log'}")
    try:
        main_path.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating_handler(main_path, level, formatter, max_bytes, backup_count))
        root.addHandler(_rotating_handler(error_path, logging.ERROR, formatter, max_bytes, backup_count))
    except OSError:
        logging.getLogger(__name__).warning(
            "Failed to configure file logging under %s; continuing with console-only logging",
            log_dir,
        )

    # Route uvicorn's loggers through the root handlers.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    logging.captureWarnings(True)
    root._school_backup_logging_configured = True  # type: ignore[attr-defined]


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger instance."""

    return logging.getLogger(name or __name__)
