import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")

_LOGGING_INITIALIZED = False


def new_trace_id() -> str:
    return str(uuid.uuid4())


class TraceIdFilter(logging.Filter):
    """Attach the current request trace id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = trace_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": getattr(record, "trace_id", "-"),
        }

        for field in ("cache_key", "task_id", "duration_ms", "status_code", "method", "path"):
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", use_json: bool = False, force: bool = False):
    """Configure root logging once per process."""
    global _LOGGING_INITIALIZED
    if _LOGGING_INITIALIZED and not force:
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TraceIdFilter())
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s [TRACE %(trace_id)s] %(name)s: %(message)s"
            )
        )

    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
    _LOGGING_INITIALIZED = True
