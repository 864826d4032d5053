"""
observability/logger.py — FitCoach Structured Logger

Sets up structlog with:
  - JSON output to a rotating log file
  - Optional console output: coloured key/value (dev) or JSON (prod/pipe)
  - Consistent fields on every log line: timestamp, level, event, session_id

Usage:
    from fitcoach.observability.logger import get_logger, setup_logging
    setup_logging(level="INFO", log_dir="./data/logs", console_output=False)
    log = get_logger(__name__)
    log.info("executor.tool.start", tool="find_exercise", attempt=1)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

# ─────────────────────────────────────────────────────────────────────────────
# Third-party loggers that are noisy at INFO (HTTP request lines).
# ─────────────────────────────────────────────────────────────────────────────

_QUIET_LOGGERS = [
    "httpx",
    "httpcore",
    "openai",
    "aiosqlite",
]


def _quiet_noisy_loggers() -> None:
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: Optional[bool] = None,  # None = auto-detect from tty
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,   # 100 MB
    backup_count: int = 5,
) -> None:
    """
    Configure structlog and stdlib logging. Call once at application startup.

    Args:
        level:          Log level string — DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for rotating log files.
        json_format:    Console renderer. True = JSON, False = coloured dev
                        output, None = JSON unless stderr is a terminal.
        console_output: Whether to emit logs to stderr at all. The chat REPL
                        writes to stdout, so logs never share its stream.
        max_bytes:      Max size of each log file before rotation.
        backup_count:   Number of rotated log files to keep.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if json_format is None:
        json_format = not sys.stderr.isatty()

    # ── Shared structlog processors ───────────────────────────────────────────
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # ── File handler (always JSON) ────────────────────────────────────────────
    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_dir / "fitcoach.log",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            foreign_pre_chain=shared_processors,
        )
    )
    handlers: list[logging.Handler] = [file_handler]

    # ── Console handler (JSON or pretty) ─────────────────────────────────────
    if console_output:
        console_renderer: Any = (
            structlog.processors.JSONRenderer()
            if json_format
            else structlog.dev.ConsoleRenderer(colors=True)
        )
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    console_renderer,
                ],
                foreign_pre_chain=shared_processors,
            )
        )
        handlers.append(console_handler)

    # ── Configure stdlib logging (structlog routes through it) ────────────────
    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )
    _quiet_noisy_loggers()

    # ── Configure structlog ───────────────────────────────────────────────────
    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "fitcoach", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a bound logger with optional initial context values.

    Args:
        name:             Logger name, typically __name__ of the calling module.
        **initial_values: Key-value pairs permanently bound to this logger instance.

    Example:
        log = get_logger(__name__, component="executor")
        log.info("executor.tool.success", tool="create_workout")
        # → {"event": "executor.tool.success", "tool": "create_workout",
        #    "component": "executor", "logger": "fitcoach.tools.executor", ...}
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_session(session_id: str, user_id: str) -> None:
    """
    Bind session context to all subsequent log calls in this async context.

    Called by the orchestrator at the start of every turn. structlog's
    contextvars integration attaches the values to every log line emitted in
    this task and its children, without passing them explicitly.
    """
    structlog.contextvars.bind_contextvars(session_id=session_id, user_id=user_id)


def clear_session() -> None:
    """Clear session context vars at the end of a turn."""
    structlog.contextvars.unbind_contextvars("session_id", "user_id")
