"""Logging configuration for the sync pipeline."""

import logging
import sys

from search_sync.config import get_settings

# Client libraries that log every HTTP round-trip at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "aiohttp.access")


def setup_logging(level: str | None = None) -> None:
    """Configure pipeline logging once per process.

    Args:
        level: Optional override of the configured log level.
    """
    settings = get_settings()

    logging.basicConfig(
        level=level or settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if not settings.debug:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        logging.Logger: Configured logger instance.
    """
    return logging.getLogger(name)
