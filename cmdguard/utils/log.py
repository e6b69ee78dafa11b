"""Logging utilities for cmdguard.

Console output goes to stderr so it never mixes with verdicts printed on
stdout (the ``hook`` command's stdout is parsed by the agent runtime). The
optional log file holds one JSON object per line, including every field
passed through ``extra=``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

LOG_LEVEL_ENV_VAR = "CMDGUARD_LOG_LEVEL"

# Attributes every LogRecord carries; anything else came from ``extra=``.
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonLinesFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_"):
                entry[key] = value
        return json.dumps(entry, ensure_ascii=True, default=str)


class CmdguardLogger:
    """Logger for cmdguard."""

    def __init__(self, name: str = "cmdguard"):
        self.logger = logging.getLogger(name)
        level_name = os.getenv(LOG_LEVEL_ENV_VAR, "WARNING").upper()
        # The file handler records debug output; the console respects the configured level.
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        if not self.logger.handlers:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(getattr(logging, level_name, logging.WARNING))
            console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
            self.logger.addHandler(console_handler)

        self._file_handler: Optional[logging.FileHandler] = None

    @property
    def log_file(self) -> Optional[Path]:
        if self._file_handler is None:
            return None
        return Path(self._file_handler.baseFilename)

    def attach_file_handler(self, log_file: Path) -> Path:
        """Attach or replace the JSON-lines file handler."""
        log_file = log_file.resolve()
        if self.log_file == log_file:
            return log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)
        if self._file_handler is not None:
            self.logger.removeHandler(self._file_handler)
            self._file_handler.close()

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLinesFormatter())
        self.logger.addHandler(file_handler)
        self._file_handler = file_handler
        return log_file

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.warning(message, *args, **kwargs)


_logger: Optional[CmdguardLogger] = None


def get_logger() -> CmdguardLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = CmdguardLogger()
    return _logger


def enable_file_logging(log_file: Path) -> Path:
    """Make the global logger also write to ``log_file``."""
    logger = get_logger()
    path = logger.attach_file_handler(log_file)
    logger.debug(f"[logging] File logging enabled at {path}")
    return path
