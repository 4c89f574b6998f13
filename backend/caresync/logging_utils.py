from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys
from typing import Optional

from .config import settings

# Structured fields copied from ``extra=`` into each JSON line.
LOG_FIELDS = (
    "event",
    "ip",
    "user_id",
    "bucket",
    "key",
    "reason",
    "path",
    "status",
    "request_id",
    "metric",
    "alert_level",
    "threat_type",
    "db_backend",
    "purged_events",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in LOG_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger()
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    root.addHandler(handler)
    # Access lines duplicate the request metrics the guard middleware records.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
