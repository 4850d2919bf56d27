from __future__ import annotations

import sys

from loguru import logger

_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(level: str = "INFO") -> None:
    """Route engine logs to stderr at ``level``.

    The host plugin framework captures the plugin's stderr, so a single sink is
    enough.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_LOG_FORMAT, colorize=False)
