import logging
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from aiqueue.models import QueueEntry


def setup_logging(*, level: str = "INFO", json_logs: bool = False) -> None:
    """
    Route structlog through the stdlib ``aiqueue`` loggers.

    Parameters
    ----------
    level : str
        Level name applied to the ``aiqueue`` logger tree.
    json_logs : bool
        Render JSON lines (for log collectors) instead of the console format.
    """
    logging.basicConfig(format="%(message)s")
    logging.getLogger("aiqueue").setLevel(level.upper())
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**context) -> Iterator[None]:
    """Bind context vars for the block, leaving keys bound by an outer block untouched."""
    bound = structlog.contextvars.get_contextvars()
    to_bind = {key: value for key, value in context.items() if key not in bound}
    if not to_bind:
        yield
        return
    with structlog.contextvars.bound_contextvars(**to_bind):
        yield


def entry_context(entry: QueueEntry) -> dict[str, str | int | None]:
    return {
        "entry_id": entry.id,
        "batch_id": entry.batch_id,
        "retry_count": entry.retry_count,
    }
