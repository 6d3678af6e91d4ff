"""Structured logging configuration using structlog.

Every record carries the bound ``request_id`` / ``execution_id`` context,
so one run can be followed across the scheduler, node implementations and
outbound calls. Rendering is JSON unless running in development or with
``LOG_FORMAT=text``.
"""

import logging
import sys

import structlog
from app.config import get_settings

# Loggers that emit one line per node or per registration
ENGINE_LOGGERS = (
    "workflow.engine",
    "nodes.registry",
    "integrations.registry",
    "integrations.credentials",
)


def setup_logging() -> None:
    """Configure structlog and route stdlib logging through the same renderer."""
    settings = get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    engine_level = logging.DEBUG if settings.ENGINE_TRACE else max(log_level, logging.INFO)
    for name in ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(engine_level)

    # Outbound calls from http.request and integration clients
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
