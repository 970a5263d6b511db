from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict, Mapping, TextIO

from loguru import logger
from opentelemetry import trace


# Bound by the reward services; emitted at the top level so log queries can
# filter on them. Everything else bound by callers lands under "context".
REWARD_CONTEXT_KEYS = ("user_id", "order_id", "referrer_id", "referee_id", "step")

_STDLIB_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class InterceptHandler(logging.Handler):
    """Route stdlib records (SQLAlchemy, uvicorn) through Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {key: value for key, value in vars(record).items() if key not in _STDLIB_RECORD_ATTRS}
        message = record.getMessage().replace("{", "{{").replace("}", "}}")
        logger.bind(**extra).opt(depth=6, exception=record.exc_info).log(level, message)


def build_log_payload(record: Mapping[str, Any], metadata: Mapping[str, str]) -> Dict[str, Any]:
    """Flatten a Loguru record into the JSON document shipped to the collector."""

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    context = dict(record["extra"])
    for key in REWARD_CONTEXT_KEYS:
        if key in context:
            payload[key] = context.pop(key)
    if context:
        payload["context"] = context

    exception = record["exception"]
    if exception is not None:
        payload["error"] = {
            "type": exception.type.__name__ if exception.type else "unknown",
            "message": str(exception.value) if exception.value is not None else "",
        }
    return payload


class JsonLogSink:
    def __init__(self, metadata: Mapping[str, str], stream: TextIO | None = None) -> None:
        self._metadata = dict(metadata)
        self._stream = stream

    def __call__(self, message: "logger.Message") -> None:
        stream = self._stream or sys.stdout
        stream.write(json.dumps(build_log_payload(message.record, self._metadata), default=str) + "\n")


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    stream: TextIO | None = None,
) -> None:
    """Send every Loguru and stdlib record to a single JSON sink."""

    logger.remove()
    metadata = {"service": service_name, "environment": environment, "version": version}
    logger.add(JsonLogSink(metadata, stream), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
