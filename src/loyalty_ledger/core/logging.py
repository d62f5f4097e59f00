from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }
)

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "apscheduler.executors.default")


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, SQLAlchemy, APScheduler) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = str(record.msg)

        context = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_FIELDS}
        escaped = message.replace("{", "{{").replace("}", "}}")

        target = logger.bind(stdlib_logger=record.name, **context)
        target.opt(depth=6, exception=record.exc_info).log(level, escaped)


def _trace_context() -> Dict[str, str]:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return {}
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
    }


def _json_sink(message: "logger.Message", metadata: Dict[str, Any]) -> None:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "function": record["function"],
        **metadata,
    }
    payload.update(_trace_context())
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    if record["extra"]:
        payload.update(record["extra"])

    sys.stdout.write(json.dumps(payload, default=str) + "\n")


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
) -> None:
    """Install the JSON Loguru sink and bridge stdlib loggers into it."""

    logger.remove()
    metadata = {"service": service_name, "environment": environment, "version": version}
    logger.add(
        lambda message: _json_sink(message, metadata),
        level=level,
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
