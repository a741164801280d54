"""Root logger configuration for the CLI entry points."""

from __future__ import annotations

import logging
import sys
from typing import Literal

from pythonjsonlogger.json import JsonFormatter

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_JSON_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

# Chatty third-party loggers kept at WARNING unless running at DEBUG.
_NOISY_LOGGERS = ("sqlalchemy.engine", "web3", "urllib3", "aiohttp")


def configure_logging(level: int = logging.INFO, fmt: Literal["text", "json"] = "text") -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Numeric logging level (see ``Settings.get_logging_level``).
        fmt: ``text`` for human-readable lines, ``json`` for structured output.
    """
    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(
            JsonFormatter(
                _JSON_FORMAT,
                rename_fields={"asctime": "timestamp", "levelname": "level"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
