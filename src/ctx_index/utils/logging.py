"""Logging setup for ctx-index."""

import sys

from loguru import logger


def configure_logging(level: str = "WARNING", serialize: bool = False) -> None:
    """Replace loguru's default sink with one on stderr at ``level``.

    stdout is left alone so callers can print results or protocol frames.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        serialize=serialize,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {name}:{line} - {message}",
    )
