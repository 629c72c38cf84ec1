"""Logging configuration."""

import logging
import sys

ROOT_LOGGER_NAME = "ioc_resolver"


class ComponentFormatter(logging.Formatter):
    """Tags each record with its component (the logger name below ``ioc_resolver``)."""

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with a [component] tag."""
        name = record.name
        if name.startswith(f"{ROOT_LOGGER_NAME}."):
            name = name[len(ROOT_LOGGER_NAME) + 1:]
        record.component = name
        return super().format(record)


def setup_logging(debug: bool = False) -> logging.Logger:
    """
    Set up logging for the resolver.

    Calling it again only updates the level; no second handler is added.

    Args:
        debug: Enable debug-level logging

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    if not any(getattr(h, "_ioc_resolver", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            ComponentFormatter(fmt="%(asctime)s [%(component)s] %(levelname)s: %(message)s")
        )
        handler._ioc_resolver = True
        logger.addHandler(handler)

    return logger
