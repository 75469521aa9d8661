from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from triggerfi.common import sanitize_text, sanitize_value

LOGGER_NAME = "triggerfi"

RESERVED_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``log_event`` extras become top-level keys."""

    def __init__(self, *, role: str = "") -> None:
        super().__init__()
        self._role = role

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_text(record.getMessage()),
        }
        if self._role:
            payload["role"] = self._role

        payload.update(
            (key, sanitize_value(value))
            for key, value in vars(record).items()
            if key not in RESERVED_RECORD_FIELDS and not key.startswith("_")
        )

        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(*, role: str = "", level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(role=role))

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger
