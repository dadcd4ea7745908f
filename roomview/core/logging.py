"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in Azure Monitor, ELK, or CloudWatch.
Every log includes: job_id, tenant_id, version, stage, timestamp.
"""

import re
import sys
import time
import asyncio
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime
from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps

from roomview import __version__

# Context variables for request/task-scoped logging
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = __version__

    job_id = job_id_var.get()
    if job_id:
        event_dict.setdefault("job_id", job_id)

    tenant_id = tenant_id_var.get()
    if tenant_id:
        event_dict.setdefault("tenant_id", tenant_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


# Query parameters that carry signed-URL credentials (local HMAC and Azure SAS)
_URL_SECRET = re.compile(r"([?&](?:sig|sv|se|sp|sr|skoid|sktid|skt|ske|sks|skv)=)[^&\s\"']+")
_SECRET_KEYS = frozenset({"api_key", "authorization", "sig", "connection_string"})


def redact_secrets(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials in signed URLs and known secret fields."""
    for key, value in list(event_dict.items()):
        if key in _SECRET_KEYS:
            event_dict[key] = "***"
        elif isinstance(value, str) and "sig=" in value:
            event_dict[key] = _URL_SECRET.sub(r"\1***", value)
    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            redact_secrets,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(job_id="abc123", tenant_id="shop-1", stage="composite"):
            logger.info("render_started")
    """

    def __init__(
        self,
        job_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        stage: Optional[str] = None
    ):
        self.job_id = job_id
        self.tenant_id = tenant_id
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        if self.job_id:
            self._tokens.append((job_id_var, job_id_var.set(self.job_id)))
        if self.tenant_id:
            self._tokens.append((tenant_id_var, tenant_id_var.set(self.tenant_id)))
        if self.stage:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []
        return False

    def set_stage(self, stage: str):
        """Update the current stage."""
        self._tokens.append((stage_var, stage_var.set(stage)))


def set_job_context(job_id: str, stage: Optional[str] = None, tenant_id: Optional[str] = None):
    """Set the current job context for logging."""
    job_id_var.set(job_id)
    if stage:
        stage_var.set(stage)
    if tenant_id:
        tenant_id_var.set(tenant_id)


def clear_job_context():
    """Clear the current job context."""
    job_id_var.set(None)
    tenant_id_var.set(None)
    stage_var.set(None)


@contextmanager
def _stage_span(func, stage: str):
    """Bind stage_var and log start, completion or failure with duration."""
    logger = get_logger(func.__module__)
    token = stage_var.set(stage)
    logger.info("stage_started", stage=stage)
    started = time.perf_counter()
    try:
        yield
    except Exception as e:
        logger.warning(
            "stage_failed",
            stage=stage,
            duration_ms=int((time.perf_counter() - started) * 1000),
            error=str(e),
            error_type=type(e).__name__
        )
        raise
    else:
        logger.info("stage_completed", stage=stage, duration_ms=int((time.perf_counter() - started) * 1000))
    finally:
        stage_var.reset(token)


def with_logging(stage: str):
    """
    Decorator to wrap a stage function with logging context and timing.
    Works for plain and async functions.

    Usage:
        @with_logging("normalize")
        def normalize_image(image: bytes) -> bytes:
            ...
    """
    def decorator(func):
        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with _stage_span(func, stage):
                    return await func(*args, **kwargs)
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with _stage_span(func, stage):
                return func(*args, **kwargs)
        return sync_wrapper

    return decorator


# Example log output structure:
# {
#   "timestamp": "2026-05-20T10:00:00Z",
#   "level": "info",
#   "event": "render_completed",
#   "job_id": "550e8400-e29b-41d4-a716-446655440000",
#   "tenant_id": "shop-42",
#   "version": "1.0.0",
#   "output_key": "tenants/shop-42/renders/550e8400-e29b-41d4-a716-446655440000/output.png"
# }
