from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

from feedmaker.config.models import FileLoggingSettings, LoggingSettings

LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log at INFO on every request or parse.
_NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio", "charset_normalizer")


def _file_handler(settings: FileLoggingSettings) -> Optional[logging.Handler]:
    raw_path = settings.path.strip()
    if not raw_path:
        return None
    path = Path(raw_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(path),
        when="midnight",
        backupCount=settings.rotation.backup_count,
        encoding="utf-8",
    )
    handler.suffix = "%Y-%m-%d"
    return handler


def init_logging(settings: LoggingSettings) -> None:
    """
    Configure the root logger for the CLI and batch runs.

    Records go to stderr and, when a path is set, to a file rotated at midnight.
    """
    level = logging.getLevelNamesMapping().get(settings.level.upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {settings.level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    def attach(handler: logging.Handler) -> None:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    attach(logging.StreamHandler())
    try:
        file_handler = _file_handler(settings.file)
    except OSError:
        root_logger.error("File logging handler failed to initialize path=%s", settings.file.path, exc_info=True)
    else:
        if file_handler is not None:
            attach(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


__all__ = ["init_logging"]
