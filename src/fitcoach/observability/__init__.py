"""
observability/ — Structured logging (structlog)

Public API:
    from fitcoach.observability import setup_logging, get_logger
"""

from fitcoach.observability.logger import bind_session, clear_session, get_logger, setup_logging

__all__ = ["setup_logging", "get_logger", "bind_session", "clear_session"]
