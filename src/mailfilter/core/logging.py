"""structlog setup for mailfilter.

The CLI renders to the console; ``mailfilter serve`` emits JSON lines.
A poll cycle binds ``poll_cycle_id`` into structlog's contextvars, so every
event logged while the cycle runs (and every action_log row written by it)
carries the same ID.

    logger = get_logger(__name__)
    set_correlation_id(uuid.uuid4().hex)
    logger.info("message_classified", message_id="AAMk...", category="REVIEW")
"""

import logging
import sys

import structlog

CORRELATION_KEY = "poll_cycle_id"


def set_correlation_id(correlation_id: str | None) -> None:
    """Bind the poll cycle ID for the current context; None unbinds it."""
    if correlation_id is None:
        structlog.contextvars.unbind_contextvars(CORRELATION_KEY)
    else:
        structlog.contextvars.bind_contextvars(**{CORRELATION_KEY: correlation_id})


def get_correlation_id() -> str | None:
    return structlog.contextvars.get_contextvars().get(CORRELATION_KEY)


def _renderer(json_output: bool) -> list[structlog.types.Processor]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        log_level: Name of a stdlib level, case-insensitive
        json_output: JSON lines when True, human-readable console output otherwise
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer(json_output),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
