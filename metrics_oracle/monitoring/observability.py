"""
Observability Module

Process-wide logging setup: structlog for the oracle's key-value events,
stdlib logging for library and configuration messages.
"""

import logging
import sys
from typing import Optional

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False, stream=None) -> None:
    """
    Configure structlog and the root stdlib logger

    Args:
        level: Log level name
        json_output: Render JSON lines instead of console output
        stream: Output stream (defaults to stderr)
    """
    stream = stream or sys.stderr
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    if not any(getattr(h, '_metrics_oracle', False) for h in root_logger.handlers):
        handler = logging.StreamHandler(stream)
        handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handler._metrics_oracle = True
        root_logger.addHandler(handler)


def bind_request(request_id: str, protocol: str, metric: str, **extra) -> None:
    """Bind request context to every log event of the current task"""
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        protocol=protocol,
        metric=metric,
        **extra
    )


def clear_request(keys: Optional[list] = None) -> None:
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()
