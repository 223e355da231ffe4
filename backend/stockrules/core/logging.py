from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from stockrules.core.config import get_settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)  # type: ignore[arg-type]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int | str | None = None) -> None:
    """Configure application-wide structured logging.

    Without an explicit ``level`` the configured ``log_level`` setting is used.
    """

    if level is None:
        level = get_settings().log_level.upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    # Remove default handlers that may have been set by libraries.
    root.handlers.clear()
    root.addHandler(handler)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **fields: Any,
) -> None:
    """Emit a log record whose structured fields land in the JSON payload.

    Batch runs pass their ``batch_id`` here so every line of one run can be
    correlated.
    """

    logger.log(level, message, extra={"extra": dict(fields)})


__all__ = ["JsonFormatter", "configure_logging", "log_with_context"]
