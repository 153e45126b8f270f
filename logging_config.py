"""
logging_config.py - Centralized logging configuration.

Every module logs through get_logger(__name__) with pipe-delimited
key=value messages ("reconcile_complete | counterparty=... | matched=...").
setup_logging() is called once by the CLI / API entry points.

JSON mode writes one object per line. Messages routinely contain quoted
names (%r of Japanese company names), so lines are built with json.dumps
rather than a format string.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional, TextIO

TEXT_FORMAT = "%(asctime)s [%(name)-16s] %(levelname)-7s %(message)s"

# Client libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, module, message[, exception]."""

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """Configure the root logger once.

    Args:
        level: Logging level for application loggers.
        json_format: Emit JSON lines instead of aligned text.
        stream: Destination; stderr by default so stdout stays clean for
            CLI output.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_format:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(handler)

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
