"""
Logging setup

Applies LOG_LEVEL / LOG_FORMAT from settings to the `dualval` logger tree.
Modules only ever call `logging.getLogger(__name__)`.
"""

import json
import logging

from dualval.config import get_settings


class JsonFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None, fmt: str | None = None) -> logging.Logger:
    """Configure the package logger once; later calls only adjust the level."""
    settings = get_settings().logging
    logger = logging.getLogger("dualval")
    logger.setLevel(level or settings.log_level)

    if not any(getattr(h, "_dualval", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler._dualval = True  # type: ignore[attr-defined]
        if (fmt or settings.log_format) == "json":
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
        logger.addHandler(handler)
    return logger
