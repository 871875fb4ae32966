"""structlog setup for the tracker.

Every record, whether it comes from a structlog logger or from a library
using the standard ``logging`` module, is routed through one
``ProcessorFormatter`` so that production output is uniformly JSON.
Work done on behalf of a user carries ``user_id`` through
``user_log_context``.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SERVICE_NAME = "checkin-tracker"

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx")


def add_service_name(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(json_output: bool) -> tuple[Processor, Processor]:
    """Return (exception processor, final renderer) for the output mode."""
    if json_output:
        return structlog.processors.format_exc_info, structlog.processors.JSONRenderer()
    return structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(level: str = "INFO", *, json_output: bool = False) -> None:
    """Install structlog and the stdlib root handler.

    Safe to call more than once; the root handler is replaced each time.
    """
    exc_processor, renderer = _renderer(json_output)
    pre_chain = [*_pre_chain(), exc_processor]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def user_log_context(external_id: str) -> Iterator[None]:
    """Tag every record emitted inside the block with ``user_id``."""
    with structlog.contextvars.bound_contextvars(user_id=external_id):
        yield
