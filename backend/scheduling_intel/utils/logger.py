import logging
import sys
from typing import Optional

import structlog

from scheduling_intel.core.config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog on top of the standard library logging.

    Events carry context variables bound per request (correlation id, actor),
    ISO timestamps and rendered exceptions. Production and ``LOG_FORMAT=json``
    emit one JSON object per line; everything else gets the console renderer.

    Args:
        settings: Settings to read the level and format from; defaults to the cached settings
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    use_json = settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production"
    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # The console renderer formats exceptions itself
    final_processors = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if use_json:
        final_processors.append(structlog.processors.format_exc_info)
    final_processors.append(renderer)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=final_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Keep SQL echo and access logs out of the application stream unless debugging
    for noisy in ("sqlalchemy.engine", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.INFO if settings.DEBUG else logging.WARNING)


def bind_request_context(**values) -> None:
    """Bind values onto every log event for the current request"""
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


__all__ = [
    "setup_logging",
    "bind_request_context",
    "clear_request_context"
]
