"""Logging configuration for dotward.

Environment Variables:
    DOTWARD_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (overrides ``--verbose``)
"""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "dotward"


def get_log_level(verbose: bool = False) -> int:
    """Get log level from environment, falling back to the verbosity flag."""

    level_str = os.environ.get("DOTWARD_LOG_LEVEL")
    if level_str:
        return getattr(logging, level_str.upper(), logging.INFO)
    return logging.DEBUG if verbose else logging.WARNING


def setup_logging(verbose: bool = False, *, console: Console | None = None) -> logging.Logger:
    """Attach a rich handler to the ``dotward`` logger.

    Calling it again replaces the handler, so repeated CLI invocations in one
    process (tests) do not stack handlers.
    """

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=verbose,
        markup=False,
        rich_tracebacks=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(get_log_level(verbose))
    return logger
