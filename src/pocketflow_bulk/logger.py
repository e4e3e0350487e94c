"""
Structured Logging
==================

structlog configuration for applications embedding pocketflow_bulk.

The library itself only emits events through ``structlog.get_logger``; call
``configure_logging`` once at application start-up to choose level and
output format.
"""

import logging
import sys
from typing import Any, Dict, List, Optional

import structlog

LOG_LEVELS: Dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_log_level(level: str) -> int:
    """Numeric level for a level name, INFO when unknown."""
    return LOG_LEVELS.get(level.upper(), logging.INFO)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configure stdlib logging and structlog together.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: Render JSON lines instead of the console format
    """
    log_level = get_log_level(level)

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    logging.getLogger().setLevel(log_level)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class LogContext:
    """
    Bind key-value pairs to every event logged inside the block.

    Usage:
        with LogContext(run_id="a1b2", batch="bulk_get"):
            logger.info("chunk_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.new_context = kwargs
        self._tokens: Optional[Dict[str, Any]] = None

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.new_context)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._tokens:
            structlog.contextvars.reset_contextvars(**self._tokens)
