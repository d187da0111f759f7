from __future__ import annotations

"""Logger access and process-wide logging setup."""

import logging

from .config import LoggingSettings


def getLogger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(settings: LoggingSettings | None = None) -> None:
    """
    Install level and format from LoggingSettings on the root logger.

    Calling it again replaces the previous handler configuration.
    """
    settings = settings or LoggingSettings()
    logging.basicConfig(level=settings.level, format=settings.format, force=True)
    logging.getLogger("kazoo").setLevel(max(logging.getLevelName(settings.level), logging.WARNING))
