"""Logging setup for timeblocker.

All modules log through ``logging.getLogger(__name__)``; this module only
installs the process-wide handler and keeps chatty SDK loggers quiet.
"""

from __future__ import annotations

import logging
import sys

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Marks the handler we own so repeated setup calls reuse it.
_HANDLER_ATTR = "_timeblocker_log_handler"

# HTTP transport and SDK loggers emit a line per request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "google_genai")


def _resolve_level(level: str) -> int:
    numeric_level = logging.getLevelName(level.strip().upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level!r}")
    return numeric_level


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger for timeblocker.

    Attaches a single :class:`logging.StreamHandler` writing to *stderr*.
    Calling this again only updates the level of the existing handler.

    Args:
        level: A standard logging level name such as ``"DEBUG"``.

    Raises:
        ValueError: If *level* is not a recognised logging level.
    """
    numeric_level = _resolve_level(level)

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # SDK request logs stay at WARNING unless we are debugging.
    sdk_level = numeric_level if numeric_level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(sdk_level)

    for handler in root.handlers:
        if getattr(handler, _HANDLER_ATTR, False):
            handler.setLevel(numeric_level)
            return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    setattr(handler, _HANDLER_ATTR, True)
    root.addHandler(handler)
