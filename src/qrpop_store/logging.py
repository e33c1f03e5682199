"""structlog setup for the persistence layer.

The package logs through two kinds of loggers: structlog key-value events
from the facade and plain ``logging`` records from the store and the
indexer. ``configure_logging`` routes both through one handler so an
application sees a single stream, rendered as JSON or for the console.

Store identity (name, url) is attached to every entry logged while a
store opens via ``store_context``.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from .config import PersistenceConfig
    from .persistence.location import StoreDescription

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("PIL",)


def _wants_json(json_output: bool | None) -> bool:
    if json_output is not None:
        return json_output
    return os.getenv("QRPOP_LOG_JSON") == "1" or not sys.stderr.isatty()


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_logging(level: str = "INFO", json_output: bool | None = None) -> None:
    """Send structlog events and stdlib records to one stderr handler.

    Args:
        level: Root log level name
        json_output: JSON lines if True, console if False; None picks JSON
            when QRPOP_LOG_JSON=1 or stderr is not a terminal
    """
    pre_chain = _pre_chain()
    if _wants_json(json_output):
        renderer: Any = structlog.processors.JSONRenderer()
        pre_chain.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_from_config(config: PersistenceConfig) -> None:
    """Apply the QRPOP_LOG_* settings carried by a configuration."""
    configure_logging(config.log_level, config.log_json)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def store_context(description: StoreDescription) -> Iterator[None]:
    """Tag log entries made inside the block with the store they concern.

    Example:
        with store_context(description):
            store.load()  # failures carry store= and url=
    """
    name = "memory" if description.in_memory else os.path.basename(description.url)
    with structlog.contextvars.bound_contextvars(
        store=name,
        url=description.url,
        cloud_sync=description.cloud_sync is not None,
    ):
        yield


__all__ = [
    "QUIET_LOGGERS",
    "configure_logging",
    "configure_from_config",
    "get_logger",
    "store_context",
]
