"""JSON logging configuration for the comms core."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

REDACTED_KEYS = frozenset(
    {
        "signature",
        "token",
        "auth_token",
        "api_key",
        "signing_key",
        "secret",
        "route_secret",
        "body_text",
        "body_html",
        "password",
    }
)


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """Replace secret-bearing or content-bearing values before they reach a log line."""
    cleaned: dict[str, Any] = {}
    for key, value in context.items():
        if key.lower() in REDACTED_KEYS:
            cleaned[key] = "***"
        elif isinstance(value, dict):
            cleaned[key] = redact_context(value)
        else:
            cleaned[key] = value
    return cleaned


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = redact_context(context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure JSON logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(f"comms.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges bound context (tenant, outbox row) into each record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            combined_context = {**self.extra, **(context or {})}
            kwargs["extra"] = {"context": combined_context}
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> LoggerAdapter:
    return LoggerAdapter(get_logger(name), {k: str(v) if v is not None else None for k, v in context.items()})
