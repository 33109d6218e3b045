"""Diagnostics for the proclife CLI.

Process events (spawns, signals, observed exits, kills on close) are logged
through structlog by `proclife.lib.process`; config warnings go through the
stdlib `logging` module. Both end up on stderr, because stdout carries the
command's report and may be shared with the supervised child.
"""

from __future__ import annotations

import logging as std_logging
import sys

import structlog

# -v shows kills on close, -vv every signal, spawn and observed exit.
_VERBOSITY_LEVELS = (std_logging.WARNING, std_logging.INFO, std_logging.DEBUG)


def level_for_verbosity(verbosity: int) -> int:
    return _VERBOSITY_LEVELS[max(0, min(verbosity, len(_VERBOSITY_LEVELS) - 1))]


def configure_logging(json_mode: bool = False, verbosity: int = 0) -> None:
    """Route process events and config warnings to stderr at *verbosity*."""

    level = level_for_verbosity(verbosity)
    handler = std_logging.StreamHandler(sys.stderr)
    handler.setFormatter(std_logging.Formatter("proclife: %(levelname)s %(message)s"))
    std_logging.basicConfig(level=level, handlers=[handler], force=True)

    processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_mode:
        # Failed kills and pidfd fallbacks are logged with exc_info.
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
