"""Structured logging configuration using structlog.

JSON lines for log aggregation, or console output (colored in
development). Every entry carries the service name and environment; log
calls made while a run is being driven also carry its execution and
workflow ids.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from app.config import Settings, get_settings

# Libraries that log per request or per query at INFO
_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "redis")


def _service_fields(settings: Settings):
    def add_service(logger, method_name, event_dict):
        event_dict.setdefault("service", settings.APP_NAME)
        event_dict.setdefault("environment", settings.ENVIRONMENT)
        return event_dict

    return add_service


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Route structlog and stdlib logging through one formatter.

    LOG_FORMAT=text renders for humans, anything else renders JSON.
    """
    settings = settings or get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=settings.is_development)
    else:
        shared_processors.append(_service_fields(settings))
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=shared_processors,
    ))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )


@contextmanager
def execution_log_context(execution_id: str, workflow_id: str) -> Iterator[None]:
    """Bind a run's ids to every log entry emitted inside the block.

    Background runs each get their own task context, so concurrent runs
    never see each other's ids.
    """
    with structlog.contextvars.bound_contextvars(execution_id=execution_id, workflow_id=workflow_id):
        yield
