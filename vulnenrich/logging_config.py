"""Logging setup for the ``vulnenrich`` logger tree.

Library modules only call ``logging.getLogger(__name__)``; a process that
runs the updater or the fan-out calls ``setup_logging`` once at startup.
"""

import datetime as dt
import json
import logging
import sys
from typing import Any, TextIO

LOGGER_NAME = "vulnenrich"

TEXT_FORMAT = "[%(asctime)s] %(levelname)s - %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# LogRecord attributes copied into structured output when a caller passes
# them through ``extra=``.
CONTEXT_FIELDS = ("source", "kind", "enricher", "ref")


def setup_logging(level: str = "INFO", structured: bool = False, stream: TextIO | None = None) -> logging.Logger:
    """Attach a single stream handler to the ``vulnenrich`` logger.

    Repeated calls reuse the handler and apply the new level and format.

    Args:
        level: Level name such as ``"debug"`` or ``"WARNING"``.
        structured: Write JSON lines instead of plain text.
        stream: Destination, ``sys.stdout`` by default.

    Returns:
        The configured package logger.

    Raises:
        ValueError: ``level`` is not a logging level name.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level: {level}")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric)

    handler = next((h for h in logger.handlers if isinstance(h, logging.StreamHandler)), None)
    if handler is None:
        handler = logging.StreamHandler(stream or sys.stdout)
        logger.addHandler(handler)
    elif stream is not None:
        handler.setStream(stream)

    handler.setLevel(numeric)
    handler.setFormatter(StructuredFormatter() if structured else logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT))
    return logger


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with any ``CONTEXT_FIELDS`` present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": dt.datetime.fromtimestamp(record.created, dt.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)
