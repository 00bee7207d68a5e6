"""JSON logging for the cart recovery service.

Every line carries the trace id of the webhook or job that produced it.
The id comes from the record's bound context when a `TraceLogger` is used,
otherwise from the trace context set by the HTTP middleware or the worker
for the job being run.
"""

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Optional

_trace_id: ContextVar[Optional[str]] = ContextVar("cartrecovery_trace_id", default=None)


def set_trace_id(trace_id: Optional[str]) -> Token:
    return _trace_id.set(trace_id)


def reset_trace_id(token: Token) -> None:
    _trace_id.reset(token)


def current_trace_id() -> Optional[str]:
    return _trace_id.get()


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with `trace_id` lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        context = dict(getattr(record, "context", None) or {})
        trace_id = context.pop("trace_id", None) or current_trace_id()

        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if trace_id:
            log_data["trace_id"] = trace_id
        if context:
            log_data["context"] = context
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"cartrecovery.{name}")


class TraceLogger(logging.LoggerAdapter):
    """Merges bound fields with the per-call `context=` keyword into the record context."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs


def bind_trace(logger: logging.Logger, trace_id: Optional[str], **fields: Any) -> TraceLogger:
    bound = {"trace_id": trace_id} if trace_id else {}
    bound.update({k: str(v) for k, v in fields.items() if v is not None})
    return TraceLogger(logger, bound)
