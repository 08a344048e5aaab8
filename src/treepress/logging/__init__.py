from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

from treepress.config.models import LoggingSettings

LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ACCESS_LOGGER_NAME = "aiohttp.access"


def _resolve_level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {name}")
    return level


def _build_file_handler(
    settings: LoggingSettings, level: int, formatter: logging.Formatter
) -> Optional[logging.Handler]:
    file_path = settings.file.path.strip()
    if not file_path:
        return None

    file_path_obj = Path(file_path)
    if file_path_obj.parent and not file_path_obj.parent.exists():
        file_path_obj.parent.mkdir(parents=True, exist_ok=True)

    file_handler = TimedRotatingFileHandler(
        filename=str(file_path_obj),
        when="midnight",
        interval=1,
        backupCount=settings.file.rotation.backup_count,
        encoding="utf-8",
    )
    file_handler.suffix = "%Y-%m-%d"
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    return file_handler


def init_logging(settings: LoggingSettings) -> None:
    """
    Initialize process-wide logging for the server and CLI.

    Root handlers are replaced by a console handler plus, when `logging.file.path`
    is set, a file handler rotating at midnight. HTTP access lines go through the
    `aiohttp.access` logger and can be silenced with `access_log: false`.
    """

    root_logger = logging.getLogger()
    level = _resolve_level(settings.level)
    root_logger.setLevel(level)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.setLevel(logging.INFO if settings.access_log else logging.WARNING)

    try:
        file_handler = _build_file_handler(settings, level, formatter)
    except OSError:
        root_logger.error(
            "File logging handler failed to initialize. path=%s",
            settings.file.path,
            exc_info=True,
        )
        return
    if file_handler is not None:
        root_logger.addHandler(file_handler)


__all__ = ["init_logging"]
