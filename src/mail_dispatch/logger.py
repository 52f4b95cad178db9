# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail dispatch queue.

Handlers, level and format are configured once via ``logging.basicConfig()``
in the process entry point (see :mod:`mail_dispatch.cli`); library modules only
ask for a named logger.

Example:
    Typical usage in a module::

        from mail_dispatch.logger import get_logger

        logger = get_logger(__name__)
        logger.info("Queue started")
"""

import logging

DEFAULT_LOGGER_NAME = "MailDispatch"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Return the standard library logger bound to ``name``.

    No handlers are attached here; that is the job of :func:`configure_logging`.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for a service process.

    Args:
        level: Level name such as ``"DEBUG"`` or ``"info"``. Unknown names fall
            back to ``INFO``.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
