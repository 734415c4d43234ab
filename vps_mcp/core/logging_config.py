"""Logging configuration for VPS MCP server with console and file output."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

LOG_FILES = {
    "server": "server.log",
    "middleware": "middleware.log",
    "deployments": "deployments.log",
}


def _file_handler(path: Path, level: int, max_bytes: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=0,  # truncate instead of keeping rotated copies
        encoding="utf-8",
    )
    handler.setLevel(level)
    return handler


def setup_logging(
    log_dir: Path | str = Path("logs"),
    log_level: str | None = None,
    max_file_size_mb: int = 10,
) -> None:
    """Configure structlog over stdlib logging.

    Console output is human readable on a TTY and JSON otherwise. The
    ``server``, ``middleware`` and ``deployments`` loggers additionally write
    JSON lines to their own file under ``log_dir``.

    Args:
        log_dir: Directory for log files
        log_level: Log level (defaults to LOG_LEVEL env var or INFO)
        max_file_size_mb: Max file size before truncation
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    level = getattr(logging, log_level.upper(), logging.INFO)
    max_bytes = max_file_size_mb * 1024 * 1024

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    # MCP stdio transport owns stdout
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter

    json_formatter = ProcessorFormatter(processor=structlog.processors.JSONRenderer())
    for name, filename in LOG_FILES.items():
        named_logger = logging.getLogger(name)
        named_logger.handlers.clear()
        handler = _file_handler(log_dir / filename, level, max_bytes)
        handler.setFormatter(json_formatter)
        named_logger.addHandler(handler)
        named_logger.propagate = True

    renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stderr.isatty()
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )
    console_handler.setFormatter(ProcessorFormatter(processor=renderer))

    get_server_logger().info(
        "Logging system initialized",
        log_dir=str(log_dir.absolute()),
        log_level=log_level,
        max_file_size_mb=max_file_size_mb,
        files=sorted(LOG_FILES.values()),
    )


def get_server_logger() -> Any:
    """Logger for general server operations (server.log)."""
    return structlog.get_logger("server")


def get_middleware_logger() -> Any:
    """Logger for tool request tracking (middleware.log)."""
    return structlog.get_logger("middleware")


def get_deployment_logger() -> Any:
    """Logger for deployment lifecycle events (deployments.log)."""
    return structlog.get_logger("deployments")
