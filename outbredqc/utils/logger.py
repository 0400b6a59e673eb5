"""
Logging setup for outbredqc.

All modules obtain their logger through ``get_logger(__name__)``. The package
logger gets a single rich handler the first time a logger is requested; the
level comes from the ``OUTBREDQC_LOG_LEVEL`` environment variable.
"""

import logging
import os

from rich.logging import RichHandler

PACKAGE_LOGGER_NAME = "outbredqc"
LOG_LEVEL_ENV = "OUTBREDQC_LOG_LEVEL"

_configured = False


def _configure_package_logger() -> None:
    global _configured
    if _configured:
        return

    package_logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    level_name = os.environ.get(LOG_LEVEL_ENV, "WARNING").upper()
    package_logger.setLevel(getattr(logging, level_name, logging.WARNING))

    if not package_logger.handlers:
        handler = RichHandler(
            show_path=False, rich_tracebacks=True, markup=False, log_time_format="[%X]"
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        package_logger.addHandler(handler)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the outbredqc package hierarchy.

    Args:
        name: Usually ``__name__`` of the calling module

    Returns:
        logging.Logger: Configured logger
    """
    _configure_package_logger()
    return logging.getLogger(name)


def set_log_level(level: str) -> None:
    """Change the package log level at runtime (e.g. ``"DEBUG"``)."""
    _configure_package_logger()
    logging.getLogger(PACKAGE_LOGGER_NAME).setLevel(level.upper())
