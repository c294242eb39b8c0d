"""structlog setup shared by the engine and the stdlib-logging services.

Services log through ``logging.getLogger(__name__)``; the engine logs
through ``get_logger`` and scopes ``event_id``/``table_id`` with
``operation_context`` so both kinds of record carry them.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


def drop_unset_fields(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Remove ``None`` fields (an absent admin_id, an unbound table_id)."""
    return {key: value for key, value in event_dict.items() if value is not None}


def build_processors(use_json: bool) -> tuple[list[Processor], Processor]:
    """Pre-chain processors and the final renderer for one output mode."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        drop_unset_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if use_json:
        processors.append(structlog.processors.format_exc_info)
        return processors, structlog.processors.JSONRenderer()

    processors.append(structlog.dev.set_exc_info)
    return processors, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    app_env: str = "development",
) -> None:
    """Route structlog and stdlib records through one stdout handler.

    Production always logs JSON regardless of ``json_logs``.
    """
    pre_chain, renderer = build_processors(json_logs or app_env == "production")

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
    root.setLevel(log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def operation_context(**fields: Any) -> Iterator[None]:
    """Attach fields to every record logged inside the block.

    Usage:
        with operation_context(event_id=3, table_id=12):
            logger.info("table_operation", action="scoop")
    """
    with structlog.contextvars.bound_contextvars(**fields):
        yield
