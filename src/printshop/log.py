"""structlog setup shared by the API server and the CLI."""

import logging
from typing import TextIO

import structlog


def configure_logging(level: str = "INFO", json: bool = False, stream: TextIO | None = None) -> None:
    """
    Configure structlog once per process.

    Args:
        level: Minimum level name, e.g. "INFO" or "DEBUG".
        json: Render one JSON object per line instead of console text.
        stream: Where log lines go (stdout when omitted).
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
