import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional

_RESERVED_LOG_RECORD_FIELDS = {
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

_log_context: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar(
    "devplane_log_context", default={}
)


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` to every structured record emitted inside the block."""

    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_log_context.get())


class StructuredLogFormatter(logging.Formatter):
    """JSON formatter that preserves extra fields for log aggregation."""

    def __init__(
        self,
        *,
        include_timestamp: bool = True,
        include_module: bool = True,
        default_fields: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__()
        self._include_timestamp = include_timestamp
        self._include_module = include_module
        self._default_fields = dict(default_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            **self._default_fields,
            "level": record.levelname,
            "message": record.getMessage(),
        }

        if self._include_timestamp:
            payload["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        if self._include_module:
            payload["logger"] = record.name

        extras: dict[str, Any] = current_log_context()
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_FIELDS:
                continue
            extras[key] = value

        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True,
    structured: Optional[bool] = None,
    default_fields: Optional[Mapping[str, Any]] = None,
) -> None:
    """
    Configure logging for the control plane.

    Args:
        level: Logging level; defaults to ``LOG_LEVEL`` or INFO
        format_string: Custom format string for plain-text log messages
        include_timestamp: Whether to include timestamp in log messages
        include_module: Whether to include logger name in log messages
        structured: When true, emit JSON logs that preserve ``extra`` fields.
            Defaults to the ``STRUCTURED_LOGS`` environment variable.
        default_fields: Base fields appended to each structured log record
    """
    level = level or os.getenv("LOG_LEVEL") or "INFO"
    if structured is None:
        env_value = os.getenv("STRUCTURED_LOGS")
        structured = env_value.lower() in {"1", "true", "yes"} if env_value else False

    if structured:
        formatter: logging.Formatter = StructuredLogFormatter(
            include_timestamp=include_timestamp,
            include_module=include_module,
            default_fields={"service": "devplane", **dict(default_fields or {})},
        )
    else:
        if format_string is None:
            parts = []
            if include_timestamp:
                parts.append("%(asctime)s")
            parts.append("%(levelname)s")
            if include_module:
                parts.append("%(name)s")
            parts.append("%(message)s")
            format_string = " - ".join(parts)
        formatter = logging.Formatter(format_string)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info("Logging configured with level: %s", level)
