"""
Logging setup.

Console output is tagged and coloured, with optional plain-text and JSON-lines
files. Every handler masks the HTTP source credentials.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from metric_sentinel.config.settings import Settings

LOG_TAG_CACHE = "[CACHE]"
LOG_TAG_SPIKE = "[SPIKE]"
LOG_TAG_PREFETCH = "[PREFETCH]"

# Fields passed via ``extra=`` that end up on JSON lines
JSON_EXTRA_FIELDS = ("asset_id", "metric_name", "timeframe", "key", "source", "error_code")

_TIME_FORMAT = "%H:%M:%S"
_NOISY_LIBRARIES = ("asyncio", "aiosqlite", "aiohttp")

__all__ = [
    "setup_logging",
    "get_logger",
    "SensitiveDataFilter",
    "JSONFormatter",
    "SentinelLogFormatter",
    "LOG_TAG_CACHE",
    "LOG_TAG_SPIKE",
    "LOG_TAG_PREFETCH",
]


class SensitiveDataFilter(logging.Filter):
    """Mask bearer tokens and ``api_key=`` / ``token:`` style values."""

    _MASK = "***MASKED***"
    _PATTERNS = (
        re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]{16,}"),
        re.compile(r"((?:api[_-]?key|token)['\"]?[:=]\s*['\"]?)[A-Za-z0-9._\-]{16,}", re.IGNORECASE),
    )

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = message
        for pattern in self._PATTERNS:
            masked = pattern.sub(rf"\g<1>{self._MASK}", masked)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the analysis fields from ``extra=``."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        data.update({k: getattr(record, k) for k in JSON_EXTRA_FIELDS if hasattr(record, k)})
        return json.dumps(data, default=str)


class SentinelLogFormatter(logging.Formatter):
    """
    Console formatter.

    Below WARNING a message carrying one of the LOG_TAG_* tags is printed
    under that tag (tag removed from the text); otherwise the level is shown.
    """

    RESET = "\033[0m"
    _LABELS = {
        "DEBUG": ("\033[90m", "DEBUG"),
        "INFO": ("\033[92m", "INFO"),
        "WARNING": ("\033[93m", "WARN"),
        "ERROR": ("\033[91m", "ERROR"),
        "CRITICAL": ("\033[1;91m", "CRITICAL"),
    }
    _TAGS = {
        LOG_TAG_SPIKE: "\033[96m",
        LOG_TAG_CACHE: "\033[94m",
        LOG_TAG_PREFETCH: "\033[90m",
    }

    def __init__(self):
        super().__init__(datefmt=_TIME_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        colour, label = self._LABELS.get(record.levelname, self._LABELS["INFO"])
        label = f"[{label}]"

        if record.levelno < logging.WARNING:
            for tag, tag_colour in self._TAGS.items():
                if tag in message:
                    message = message.replace(tag, "").strip()
                    colour, label = tag_colour, tag
                    break

        line = f"{colour}{self.formatTime(record, self.datefmt)} {label}{self.RESET} {message}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """
    Replace the root logger's handlers with console, text-file and JSON handlers.

    Returns the root logger.
    """
    if settings is None:
        from metric_sentinel.config.settings import get_settings

        settings = get_settings()

    level = getattr(logging, settings.logging.level.upper(), logging.INFO)
    if settings.testing_mode:
        level = min(level, logging.DEBUG)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stderr keeps CLI JSON on stdout parseable
    handlers: list[logging.Handler] = [_handler(logging.StreamHandler(sys.stderr), SentinelLogFormatter())]

    if settings.logging.file_enabled:
        logs_dir = Path(settings.logging.file_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        handlers.append(
            _handler(
                logging.FileHandler(logs_dir / f"metric_sentinel_{stamp}.log", encoding="utf-8"),
                logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt=_TIME_FORMAT),
            )
        )

    if settings.logging.json_enabled:
        json_path = Path(settings.logging.json_file)
        json_path.parent.mkdir(parents=True, exist_ok=True)
        max_bytes = settings.logging.json_max_bytes
        backup_count = settings.logging.json_backup_count
        if max_bytes > 0 and backup_count > 0:
            json_handler: logging.Handler = RotatingFileHandler(
                json_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        else:
            json_handler = logging.FileHandler(json_path, encoding="utf-8")
        handlers.append(_handler(json_handler, JSONFormatter()))

    for handler in handlers:
        handler.setLevel(level)
        root_logger.addHandler(handler)

    for lib in _NOISY_LIBRARIES:
        logging.getLogger(lib).setLevel(logging.WARNING)

    return root_logger


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(SensitiveDataFilter())
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
