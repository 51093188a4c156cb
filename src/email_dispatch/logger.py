# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the email dispatch service.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
entry points (``server.py`` and ``cli.py``) to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from email_dispatch.logger import get_logger

        logger = get_logger("BatchDispatcher")
        logger.info("Batch completed")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "EmailDispatch") -> logging.Logger:
    """Retrieve a logger instance.

    Returns a standard library logger with the specified name. Handlers and
    formatters are left to the application entry point.

    Args:
        name: The logger name. Defaults to "EmailDispatch".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for an entry point.

    Args:
        level: Level name such as "DEBUG" or "INFO". Unknown names fall back
            to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
