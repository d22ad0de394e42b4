from __future__ import annotations

import json
import logging
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}

# Chatty libraries that should only surface warnings through the bridge.
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore")


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, SQLAlchemy, httpx) through Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = str(record.msg)

        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _STDLIB_RECORD_FIELDS
        }
        context["stdlib_logger"] = record.name

        escaped = message.replace("{", "{{").replace("}", "}}")
        logger.bind(**context).opt(depth=6, exception=record.exc_info).log(level, escaped)


def _trace_fields() -> Dict[str, str]:
    span = trace.get_current_span()
    span_context = span.get_span_context() if span else None
    if not span_context or not span_context.is_valid:
        return {}
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
    }


def _render_json(message: "logger.Message", service: Dict[str, str]) -> None:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **service,
        **_trace_fields(),
    }
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    payload.update(record["extra"])
    print(json.dumps(payload, default=str), flush=True)


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    """Emit one JSON document per log line, tagged with service metadata."""

    service = {"service": service_name, "environment": environment, "version": version}
    logger.remove()
    logger.add(lambda message: _render_json(message, service), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
