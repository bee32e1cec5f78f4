"""Structured logging for the gateway.

Every module logs through ``logging.getLogger(__name__)``; this installs a
single JSON handler on the ``fichamento`` package logger so request context
passed via ``extra=`` (book id, status codes, tool-call slots) ends up as
fields of the log record instead of being interpolated into the message.
"""

from __future__ import annotations

import logging
import sys

from pythonjsonlogger import json as jsonlogger

PACKAGE_LOGGER = "fichamento"
_HANDLER_NAME = "fichamento-json"


def configure_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    if any(handler.get_name() == _HANDLER_NAME for handler in logger.handlers):
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            timestamp=True,
        )
    )
    logger.addHandler(handler)
    return logger
