"""Logging configuration for the migration tool with dual output (console + files)."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter

from ..constants import MIGRATION_LOGGER, TRANSFER_LOGGER

# Applied to structlog events and to plain stdlib records (httpx, aiosqlite)
_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]

# Third-party loggers that log every request at INFO
_QUIET_LOGGERS = ("httpx", "httpcore")


def _formatter(renderer: Any) -> ProcessorFormatter:
    return ProcessorFormatter(processor=renderer, foreign_pre_chain=_SHARED_PROCESSORS)


def _file_handler(path: Path, level: int, max_bytes: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=0,  # Truncate instead of rotating
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    return handler


def setup_logging(
    log_dir: Path | str | None = Path("logs"),
    log_level: str | None = None,
    max_file_size_mb: int = 10,
) -> None:
    """Setup dual logging system: console + files with automatic truncation.

    Creates two log files:
    - migration.log: Driver, funding and scheduling events
    - transfers.log: One event per on-chain transfer (audit trail)

    Args:
        log_dir: Directory for log files, or None for console-only logging
        log_level: Log level (defaults to LOG_LEVEL env var or INFO)
        max_file_size_mb: Max file size before truncation (no backup files kept)
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    console_renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stdout.isatty()
        else structlog.processors.JSONRenderer()
    )
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(_formatter(console_renderer))
    root_logger.addHandler(console_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    log_files: dict[str, str] = {}
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        max_bytes = max_file_size_mb * 1024 * 1024
        for name in (MIGRATION_LOGGER, TRANSFER_LOGGER):
            path = log_dir / f"{name}.log"
            named_logger = logging.getLogger(name)
            named_logger.handlers.clear()
            named_logger.addHandler(_file_handler(path, level, max_bytes))
            named_logger.propagate = True  # Console output comes from the root handler
            log_files[f"{name}_log"] = str(path)

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )

    get_migration_logger().info(
        "Logging system initialized",
        log_dir=str(log_dir) if log_dir is not None else None,
        log_level=level_name,
        max_file_size_mb=max_file_size_mb,
        **log_files,
    )


def get_migration_logger() -> Any:
    """Get logger for driver operations (writes to migration.log)."""
    return structlog.get_logger(MIGRATION_LOGGER)


def get_transfer_logger() -> Any:
    """Get logger for individual transfers (writes to transfers.log)."""
    return structlog.get_logger(TRANSFER_LOGGER)
