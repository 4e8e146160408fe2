"""Logging setup for the gateway process.

Gateway log lines start with the request's trace id in brackets
(``[00042_143000_3msgs_hello] ...``). The JSON format lifts that id into its
own ``trace_id`` field so log pipelines can group a request's lines.

Environment Variables:
    KIROGATE_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    KIROGATE_LOG_FORMAT: Output format ("text" or "json")
    KIROGATE_LOG_FILE: Optional log file path
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime
from typing import Any, Literal

LogFormat = Literal["text", "json"]

TEXT_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_TRACE_PREFIX = re.compile(r"^\[([^\]\s]+)\] ")

# Library loggers that log once per HTTP request; kept quiet unless debugging
_CHATTY_LOGGERS = ("aiohttp.access", "aiohttp.client")

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    {"timestamp": "...", "level": "INFO", "logger": "kirogate.gateway.tracing",
     "trace_id": "00001_143000_1msgs_hello", "message": "/v1/messages model=...",
     "extra": {...}}

    ``trace_id`` is present only for lines carrying a ``[trace_id]`` prefix,
    which is stripped from ``message``.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }

        match = _TRACE_PREFIX.match(message)
        if match:
            log_data["trace_id"] = match.group(1)
            message = message[match.end() :]
        log_data["message"] = message

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


def _parse_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def configure_logging(
    level: str | None = None,
    format: LogFormat | None = None,
    file_path: str | None = None,
    force: bool = False,
) -> None:
    """Install the root handlers.

    Arguments left as None fall back to the KIROGATE_LOG_* variables. Later
    calls are ignored unless ``force`` is set.

    Raises:
        ValueError: For an unknown level or format name.
    """
    global _configured
    if _configured and not force:
        return

    numeric_level = _parse_level(level or os.environ.get("KIROGATE_LOG_LEVEL", "INFO"))
    format = format or os.environ.get("KIROGATE_LOG_FORMAT", "text")  # type: ignore[assignment]
    if format not in ("text", "json"):
        raise ValueError(f"Unknown log format: {format}")
    file_path = file_path or os.environ.get("KIROGATE_LOG_FILE")

    formatter: logging.Formatter = (
        JsonFormatter() if format == "json" else logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)
    )
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if file_path:
        handlers.append(logging.FileHandler(file_path))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    chatty_level = logging.NOTSET if numeric_level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)

    _configured = True
