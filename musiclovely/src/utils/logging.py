"""
JSON log lines tagged with the request's correlation id.

CorrelationIdMiddleware stores the id in a contextvar, so every line emitted
while one Cakto delivery is reconciled (matching, transition, email, lyrics)
carries the same id and can be pulled out of the log stream together.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Whitelisted `extra={...}` keys copied into the JSON line
_EXTRA_KEYS = ("order_id", "strategy", "outcome", "provider", "error_code")

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "python_http_client")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(cid: str) -> None:
    _correlation_id.set(cid)


def generate_correlation_id() -> str:
    """32-char hex id for requests that arrive without X-Correlation-ID."""
    return uuid.uuid4().hex


def mask_email(email: Optional[str]) -> str:
    """buyer@example.com -> buy***@example.com"""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    if not domain:
        return local[:3] + "***"
    return f"{local[:3]}***@{domain}"


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return ""
    return phone[:6] + "***"


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, correlation_id, module, message + extras."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key))
            for key in _EXTRA_KEYS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Route all logging through a single JSON stdout handler. Called by create_app()."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
