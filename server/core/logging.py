"""Structured logging configuration."""

import sys
import structlog
import logging
from pathlib import Path
from core.config import Settings

NOISY_LOGGERS = (
    "aiosqlite",
    "asyncio",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "anthropic",
    "uvicorn.access",
)


def configure_logging(settings: Settings) -> None:
    """Configure structured logging based on settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setLevel(level)

    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

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
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
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

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(environment=settings.environment)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_execution_time(logger: structlog.stdlib.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    """Log execution time of a store query or loader."""
    logger.info(
        "Operation completed",
        operation=operation,
        duration_ms=round((end_time - start_time) * 1000, 1),
        **kwargs
    )


def log_api_call(logger: structlog.stdlib.BoundLogger, provider: str, model: str,
                 operation: str, success: bool, **kwargs) -> None:
    """Log LLM API calls with standardized format."""
    logger.info(
        "API call completed",
        provider=provider,
        model=model,
        operation=operation,
        success=success,
        **kwargs
    )


def log_cache_operation(logger: structlog.stdlib.BoundLogger, operation: str,
                        key: str, hit: bool = None, **kwargs) -> None:
    """Log cache operations."""
    log_data = {
        "operation": operation,
        "cache_key": key,
        **kwargs
    }

    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)


def job_log_context(job_id: str, job_type: str):
    """Bind job identity to every log line emitted while a job runs."""
    return structlog.contextvars.bound_contextvars(job_id=job_id, job_type=job_type)


def log_job_transition(logger: structlog.stdlib.BoundLogger, job_id: str,
                       from_status: str, to_status: str, **kwargs) -> None:
    """Log a job state machine transition."""
    logger.info(
        "Job transition",
        job_id=job_id,
        from_status=from_status,
        to_status=to_status,
        **kwargs
    )
