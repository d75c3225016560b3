"""Logging utilities for the Cocoinbox mail service.

Library modules only ask for named loggers. The actual logging setup
(level, handlers, format) is done once via ``logging.basicConfig()`` in the
entry point, see :func:`configure_logging`.

Example:
    Typical usage in a module::

        from cocoinbox_mail.logger import get_logger

        logger = get_logger("DomainAllocator")
        logger.info("Domain selected")
"""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "CocoinboxMail") -> logging.Logger:
    """Retrieve a logger instance.

    This function returns a standard library logger with the specified name.
    It does not configure handlers or formatters; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "CocoinboxMail".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the process.

    Args:
        level: Level name. Defaults to ``COCO_LOG_LEVEL`` or INFO.
    """
    level_name = (level or os.getenv("COCO_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,  # avoid duplicate handlers on reconfiguration
    )
