"""
Logging helpers.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

_PACKAGE_LOGGER = "miri_playground"


def get_logger(name: str) -> logging.Logger:
    """Return a module logger."""
    return logging.getLogger(name)


def setup_logging(level: str | int = "INFO", *, console: Console | None = None) -> logging.Logger:
    """
    Route playground logs through a rich handler on stderr.

    Safe to call more than once; the handler is only installed the first time.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    else:
        resolved = level

    logger = logging.getLogger(_PACKAGE_LOGGER)
    logger.setLevel(resolved)
    if not any(isinstance(handler, RichHandler) for handler in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        logger.addHandler(handler)
    return logger
