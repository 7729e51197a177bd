"""Structured logging for the orchestration service.

structlog over stdlib logging. Context bound with `operation_context` is
merged into every event logged inside it, so provider calls, admissions and
cache traffic made on behalf of a tracked operation carry its id.
"""

import sys
import structlog
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional
from core.config import Settings


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def configure_logging(settings: Settings) -> None:
    """Configure stdlib handlers and the structlog processor chain."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(level=level, handlers=_handlers(settings, level), format="%(message)s")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(1, structlog.stdlib.add_logger_name)
        processors.insert(1, structlog.processors.TimeStamper(fmt="iso"))
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(1, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def operation_context(operation_id: str, operation_type: str,
                      user_id: Optional[str] = None) -> Iterator[None]:
    """Bind a tracked operation's identity to every log event in this task."""
    fields = {"operation_id": operation_id, "operation_type": operation_type}
    if user_id:
        fields["user_id"] = user_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    """Log execution time with additional context."""
    logger.info(
        "Operation completed",
        operation=operation,
        execution_time_seconds=round(end_time - start_time, 4),
        **kwargs
    )


def log_api_call(logger: structlog.BoundLogger, provider: str, service: str,
                 endpoint: str, success: bool, **kwargs) -> None:
    """Log one provider call."""
    logger.info(
        "Provider call completed" if success else "Provider call failed",
        provider=provider,
        service=service,
        endpoint=endpoint,
        success=success,
        **kwargs
    )


def log_admission(logger: structlog.BoundLogger, service: str, priority: str,
                  submitted_at: float, admitted_at: float, **kwargs) -> None:
    """Log a queued request admitted against its service quota."""
    logger.debug(
        "Request admitted",
        service=service,
        priority=priority,
        queued_ms=int((admitted_at - submitted_at) * 1000),
        **kwargs
    )


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, hit: Optional[bool] = None, **kwargs) -> None:
    """Log cache operations."""
    if hit is not None:
        kwargs["cache_hit"] = hit
    logger.debug("Cache operation", operation=operation, cache_key=key, **kwargs)
