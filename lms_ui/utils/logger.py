"""
Logging configuration for LMS UI

The stdout handler lives on the "lms_ui" package logger only; module loggers
obtained through setup_logger(__name__) hand their records up to it.
"""
import logging
import sys
from typing import Optional

from .config import get_config

config = get_config()

PACKAGE_LOGGER = "lms_ui"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _configure_package_logger() -> logging.Logger:
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if package_logger.handlers:
        return package_logger

    if config.DEBUG:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    package_logger.setLevel(log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    package_logger.addHandler(handler)

    # uvicorn configures the root logger separately
    package_logger.propagate = False
    return package_logger


def setup_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a module logger under the package logger

    Args:
        name: Module name, usually __name__ (defaults to the package logger)

    Returns:
        Logger whose records reach the package's stdout handler
    """
    package_logger = _configure_package_logger()
    if not name or name == PACKAGE_LOGGER:
        return package_logger
    return logging.getLogger(name)


def mask_email(email: Optional[str]) -> str:
    """Shorten an email for log lines: jane.doe@example.edu -> j***@example.edu"""
    if not email or "@" not in email:
        return "<unknown>"
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


# Create default logger
logger = setup_logger(PACKAGE_LOGGER)
