"""
Structured Logging Configuration
================================

structlog over the standard library logging tree. Request and session ids
travel through contextvars; long SQL and prompt fields are clipped so a
single generation attempt does not flood the log.
"""

import logging
import os
import sys
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

CLIPPED_FIELDS = ("sql", "prompt", "corrected_sql", "raw_output")
DEFAULT_MAX_FIELD_CHARS = 2000

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sentence_transformers", "opentelemetry")


class FieldClipper:
    """Processor that truncates oversized free-text fields."""

    def __init__(self, max_chars: int = DEFAULT_MAX_FIELD_CHARS) -> None:
        self.max_chars = max_chars

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        for field in CLIPPED_FIELDS:
            value = event_dict.get(field)
            if isinstance(value, str) and len(value) > self.max_chars:
                event_dict[field] = f"{value[: self.max_chars]}... [{len(value) - self.max_chars} chars clipped]"
        return event_dict


def _max_field_chars() -> int:
    try:
        return max(int(os.getenv("LOG_MAX_FIELD_CHARS", DEFAULT_MAX_FIELD_CHARS)), 80)
    except ValueError:
        return DEFAULT_MAX_FIELD_CHARS


def setup_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (default: ``LOG_LEVEL`` or INFO)
        json_format: Render JSON lines (default: ``LOG_FORMAT=json`` or production)
    """
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    environment = os.getenv("ENVIRONMENT", "development")
    if json_format is None:
        json_format = os.getenv("LOG_FORMAT", "").lower() == "json" or environment == "production"

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        FieldClipper(_max_field_chars()),
    ]

    if json_format:
        shared_processors.append(structlog.processors.dict_tracebacks)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind key/values to every log line of the current context (request)."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
