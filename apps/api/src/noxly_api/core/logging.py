from __future__ import annotations

import inspect
import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


# Attributes every LogRecord carries; anything else came in through ``extra=``.
_STANDARD_RECORD_ATTRS = frozenset(vars(LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_QUIET_LOGGERS = ("uvicorn.access", "aiosqlite", "sqlalchemy.engine.Engine")


def _record_context(record: LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _STANDARD_RECORD_ATTRS}


class InterceptHandler(logging.Handler):
    """Forward stdlib records (uvicorn, SQLAlchemy, alembic) to the Loguru sink."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            text = record.getMessage()
        except Exception:
            self.handleError(record)
            return

        # Report the frame that called the stdlib logger, not logging internals.
        frame, depth = inspect.currentframe(), 0
        while frame is not None and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.bind(stdlib_logger=record.name, **_record_context(record)).opt(
            depth=depth, exception=record.exc_info
        ).log(level, "{}", text)


def _render_record(message: "logger.Message", metadata: Dict[str, Any]) -> str:
    record = message.record
    span = trace.get_current_span()
    span_context = span.get_span_context() if span else None

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "function": record["function"],
        "service": metadata.get("service_name", "unknown"),
        "environment": metadata.get("environment", "unknown"),
        "version": metadata.get("version", "unknown"),
    }

    if span_context and span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    if record["extra"]:
        payload.update(record["extra"])

    return json.dumps(payload, default=str)


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    """Install the JSON Loguru sink and bridge stdlib loggers into it."""

    logger.remove()
    metadata = {"service_name": service_name, "environment": environment, "version": version}

    def _sink(message: "logger.Message") -> None:
        sys.stdout.write(_render_record(message, metadata) + "\n")

    level = "DEBUG" if environment == "development" else "INFO"
    logger.add(_sink, level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
