"""Structured logging sink for scenario execution.

The core emits structured records `{level, timestamp, scenario_id, event,
...data}` through structlog. The sink is process-wide but has an explicit
lifecycle: `init_logging` is called once before the first scenario,
`flush_logging` after the run and `reset_logging` restores the structlog
defaults. Importing the package configures nothing. Formatting and
destination stay with the stdlib handler installed here (JSON lines or
console rendering).

Usage::

    from pytest_world.logs import get_logger, init_logging

    init_logging(level='DEBUG', json_output=True)
    logger = get_logger(__name__)
    logger.info('step_passed', step='I open the login page')
"""

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import TextIO

#: Name of the stdlib logger all records are routed through.
ROOT_LOGGER = 'pytest_world'

SCENARIO_KEY = 'scenario_id'

_handler: logging.Handler | None = None


def _configure_structlog() -> None:
    """Route structlog through stdlib logging with shared processors."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt='iso', utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def init_logging(level: str = 'INFO', *,
                 json_output: bool = False,
                 stream: 'TextIO | None' = None) -> None:
    """Install the logging sink.

    Calling this function more than once replaces the previously
    installed handler, so tests may re-initialize with another stream.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: If True, emit JSON lines, otherwise console output.
        stream: Destination stream, standard error by default.
    """
    global _handler  # noqa: PLW0603

    _configure_structlog()

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)

    logger = logging.getLogger(ROOT_LOGGER)
    if _handler is not None:
        logger.removeHandler(_handler)

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    _handler = handler


def flush_logging() -> None:
    """Flush the installed sink at the end of a run."""
    if _handler is not None:
        _handler.flush()


def reset_logging() -> None:
    """Remove the installed sink and restore the structlog defaults."""
    global _handler  # noqa: PLW0603

    logger = logging.getLogger(ROOT_LOGGER)
    if _handler is not None:
        logger.removeHandler(_handler)
        _handler.close()
        _handler = None

    logger.propagate = True
    structlog.reset_defaults()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger routed through the package logger."""
    if name is None or not name.startswith(ROOT_LOGGER):
        name = f'{ROOT_LOGGER}.{name}' if name else ROOT_LOGGER

    return structlog.get_logger(name)


@contextmanager
def bind_scenario(scenario_id: str) -> 'Iterator[None]':
    """Bind a scenario identifier to every record emitted in the block.

    Bindings are stored in context variables, so each worker thread
    carries its own scenario identifier.

    Args:
        scenario_id: Identifier of the running scenario.
    """
    with structlog.contextvars.bound_contextvars(**{SCENARIO_KEY: scenario_id}):
        yield

