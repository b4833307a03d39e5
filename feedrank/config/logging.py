"""
Structured logging.

Production emits one JSON object per line; viewer/session/experiment ids passed
through `extra=` become top-level keys so log pipelines can join on them.
"""
import json
import logging
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = ("viewer_id", "session_id", "experiment_id")

# Chatty third-party loggers and the level they are capped at
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "opentelemetry": logging.WARNING,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, UTC ISO-8601 timestamps."""

    def __init__(self, service: str = "feedrank") -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "service": self._service,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            (field, getattr(record, field))
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(debug: bool = False, service: str = "feedrank") -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    if debug:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    else:
        handler.setFormatter(JsonFormatter(service))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger("uvicorn.error").handlers = [handler]
