"""Structured logging for the API, the store builder thread and the query layer.

Every record carries the bound request context (request id and path) when it
is emitted inside a request, and the service name and environment always.
"""

from __future__ import annotations

import logging
import sys
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator

    from structlog.types import EventDict, Processor, WrappedLogger

from transit_feed.config import Settings, get_settings

# Loggers whose INFO output drowns the build and query events
QUIET_LOGGERS = ("uvicorn.access", "aiosqlite", "httpx")


def _service_fields(settings: Settings) -> Processor:
    def add_service(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.environment)
        return event_dict

    return add_service


def setup_logging(settings: Settings | None = None) -> None:
    """Route structlog and stdlib logging through one renderer.

    Development gets coloured console output, other environments JSON lines.
    """
    settings = settings or get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        _service_fields(settings),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development:
        renderer: Processor = structlog.dev.ConsoleRenderer(colors=True)
    else:
        shared_processors.append(structlog.processors.format_exc_info)
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
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # SQL echo follows the debug flag
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.debug else logging.WARNING
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.stdlib.get_logger(name)


@contextmanager
def log_duration(
    logger: structlog.stdlib.BoundLogger, event: str, **fields: Any
) -> Iterator[dict[str, Any]]:
    """Log ``event`` with ``duration_ms`` once the block exits.

    The yielded dict can be filled with extra fields (row counts etc.) that are
    only known at the end of the block. Failures are logged at warning level
    and re-raised.
    """
    extra: dict[str, Any] = {}
    started = time.perf_counter()
    try:
        yield extra
    except BaseException as exc:
        logger.warning(
            f"{event} failed",
            duration_ms=int((time.perf_counter() - started) * 1000),
            error=type(exc).__name__,
            **fields,
        )
        raise
    logger.info(
        event,
        duration_ms=int((time.perf_counter() - started) * 1000),
        **fields,
        **extra,
    )


def bind_request_context(**kwargs: Any) -> None:
    """Bind context variables for the current request."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    """Clear context variables after request completion."""
    structlog.contextvars.clear_contextvars()
