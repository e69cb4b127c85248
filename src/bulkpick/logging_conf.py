"""Logging setup for the picking terminal."""

import logging
import sys

from bulkpick.settings import Settings

# Third-party loggers that drown out pick events at INFO.
_NOISY = ("uvicorn.access", "watchfiles", "httpcore")


def configure_logging(settings: Settings) -> int:
    """Send log records to stdout at `settings.log_level`; returns the level applied."""
    level = logging.getLevelName(str(settings.log_level).upper())
    invalid = not isinstance(level, int)
    if invalid:
        level = logging.INFO

    # "2026-10-19 10:00:00 [INFO] bulkpick.core.coordinator: Picking ingredient INSALT02 (auto)"
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)
    # Request lines from the picking service client are only wanted while debugging.
    logging.getLogger("httpx").setLevel(logging.INFO if level <= logging.DEBUG else logging.WARNING)

    if invalid:
        logging.getLogger(__name__).warning("Invalid log level %r, using INFO", settings.log_level)
    return level
