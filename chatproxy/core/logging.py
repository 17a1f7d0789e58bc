"""One JSON object per log line on stderr.

Structured values are passed with ``extra=``.  Only the names listed in
``EXTRA_FIELDS`` are emitted, so unrelated record attributes never reach the
output.
"""

import json
import logging
import sys
from datetime import UTC, datetime

EXTRA_FIELDS = (
    "request_id",
    "identity",
    "model",
    "method",
    "path",
    "status_code",
    "error_code",
    "latency_ms",
    "prompt_chars",
    "response_bytes",
    "relay_outcome",
)

# httpx logs every request line, upstream URL included, at INFO.
QUIET_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    def __init__(self, fields: tuple[str, ...] = EXTRA_FIELDS):
        super().__init__()
        self._fields = fields

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_extra_values(record, self._fields))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def _extra_values(record: logging.LogRecord, fields: tuple[str, ...]) -> dict[str, object]:
    values: dict[str, object] = {}
    for field in fields:
        value = getattr(record, field, None)
        if value is not None:
            values[field] = value
    return values


def resolve_level(log_level: str) -> int:
    level = logging.getLevelName(log_level.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(log_level: str) -> None:
    level = resolve_level(log_level)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
