"""
Global Exception Handling

Provides the error taxonomy shared by the pipelines, structured error
responses, and a circuit breaker for external providers.
"""

import traceback
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from roomview.core.config import settings
from roomview.core.logging import get_logger, job_id_var
from roomview.core.metrics import record_circuit_state
from roomview.core.timestamps import utc_now

logger = get_logger(__name__)


class ErrorCategory(str, Enum):
    """Machine-readable error categories surfaced to callers."""
    TRANSIENT_EXTERNAL = "transient_external"
    INVALID_INPUT = "invalid_input"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORAGE_ERROR = "storage_error"
    INTERNAL_INCONSISTENCY = "internal_inconsistency"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    ILLEGAL_TRANSITION = "illegal_transition"


class AIErrorKind(str, Enum):
    """Classified outcome of a failed AI provider call."""
    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid_input"
    PROVIDER_ERROR = "provider_error"
    RATE_LIMITED = "rate_limited"


# =============================================================================
# Custom Exceptions
# =============================================================================

class RoomviewError(Exception):
    """Base exception for the engine."""

    category: ErrorCategory = ErrorCategory.INTERNAL_INCONSISTENCY
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class InvalidInputError(RoomviewError):
    """Malformed, empty or oversized input. Never retried."""

    category = ErrorCategory.INVALID_INPUT

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, code=400, **kwargs)
        if field:
            self.details["field"] = field


class QuotaExceededError(RoomviewError):
    """Admission-time rejection; no work was started."""

    category = ErrorCategory.QUOTA_EXCEEDED

    def __init__(
        self,
        quota_category: str,
        retry_after: int,
        limit: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            f"Daily quota exceeded for '{quota_category}'",
            code=429,
            **kwargs
        )
        self.retry_after = retry_after
        self.details.update({
            "quota_category": quota_category,
            "limit": limit,
            "retry_after": retry_after,
        })


class RateLimitedError(RoomviewError):
    """Too many requests in the current window."""

    category = ErrorCategory.RATE_LIMITED

    def __init__(self, retry_after: int, **kwargs):
        super().__init__("Too many requests. Please wait a moment.", code=429, **kwargs)
        self.retry_after = retry_after
        self.details["retry_after"] = retry_after


class NotFoundError(RoomviewError):
    """Referenced entity does not exist (or belongs to another tenant)."""

    category = ErrorCategory.NOT_FOUND

    def __init__(self, entity: str, entity_id: str, **kwargs):
        super().__init__(f"{entity} not found: {entity_id}", code=404, **kwargs)
        self.details.update({"entity": entity, "id": entity_id})


class IllegalTransitionError(RoomviewError):
    """A state machine was asked for a transition it does not define."""

    category = ErrorCategory.ILLEGAL_TRANSITION

    def __init__(self, entity: str, from_status: str, to_status: str, **kwargs):
        super().__init__(
            f"Illegal {entity} transition: {from_status} -> {to_status}",
            code=409,
            **kwargs
        )
        self.details.update({"entity": entity, "from": from_status, "to": to_status})


class AIAdapterError(RoomviewError):
    """Raised when an external AI provider call fails."""

    def __init__(
        self,
        message: str,
        service: str,
        kind: AIErrorKind = AIErrorKind.PROVIDER_ERROR,
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=502, **kwargs)
        self.kind = kind
        self.details["service"] = service
        self.details["kind"] = kind.value
        self.details["http_status"] = http_status

    @property
    def category(self) -> ErrorCategory:
        if self.kind == AIErrorKind.INVALID_INPUT:
            return ErrorCategory.INVALID_INPUT
        return ErrorCategory.TRANSIENT_EXTERNAL

    @property
    def retryable(self) -> bool:
        return self.kind != AIErrorKind.INVALID_INPUT


class TransientExternalError(RoomviewError):
    """A non-AI dependency (e.g. merchant CDN) failed in a retryable way."""

    category = ErrorCategory.TRANSIENT_EXTERNAL
    retryable = True

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=502, **kwargs)


class StorageError(RoomviewError):
    """Object store I/O failure. Retried with the transient budget."""

    category = ErrorCategory.STORAGE_ERROR
    retryable = True

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(message, code=503, **kwargs)
        if key:
            self.details["key"] = key


class StoragePermissionError(StorageError):
    """Object store rejected our credentials. Surfaced immediately."""

    category = ErrorCategory.PERMISSION_DENIED
    retryable = False


class ObjectNotFoundError(StorageError):
    """No object stored under the key."""

    retryable = False

    def __init__(self, key: str, **kwargs):
        super().__init__(f"Object not found: {key}", key=key, **kwargs)
        self.code = 404


class InternalInconsistencyError(RoomviewError):
    """Persisted state contradicts itself (e.g. claimed asset without source)."""

    category = ErrorCategory.INTERNAL_INCONSISTENCY

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


def is_retryable(exc: BaseException) -> bool:
    """Whether a failure may be retried within a stage budget."""
    if isinstance(exc, RoomviewError):
        return exc.retryable
    return False


def truncate_error(exc: BaseException, limit: int = 500) -> str:
    """Persistable error message, capped at limit characters."""
    message = exc.message if isinstance(exc, RoomviewError) else f"{type(exc).__name__}: {exc}"
    if len(message) <= limit:
        return message
    return message[:limit - 3] + "..."


def error_category(exc: BaseException) -> ErrorCategory:
    """Category for any exception; unknown exceptions are internal."""
    if isinstance(exc, RoomviewError):
        return exc.category
    return ErrorCategory.INTERNAL_INCONSISTENCY


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit breaker for one AI provider.

    States:
    - CLOSED: calls pass through; failure_threshold consecutive failures open it
    - OPEN: calls fail fast until recovery_timeout has elapsed
    - HALF_OPEN: up to half_open_max_calls probes; all succeeding closes it,
      any failure reopens it

    Callers record provider-health failures only; rejected inputs are not
    recorded.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    def _move_to(self, state: str, **log_fields):
        if state == self._state:
            return
        previous, self._state = self._state, state
        record_circuit_state(self.name, state)
        log = logger.warning if state == "OPEN" else logger.info
        log("circuit_breaker_state_changed", circuit=self.name, previous=previous, state=state, **log_fields)

    @property
    def state(self) -> str:
        """Current state; an OPEN circuit turns HALF_OPEN once the timeout passes."""
        if self._state == "OPEN" and self._last_failure_time:
            elapsed = (utc_now() - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._half_open_calls = 0
                self._move_to("HALF_OPEN")
        return self._state

    def can_execute(self) -> bool:
        state = self.state
        if state == "CLOSED":
            return True
        if state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._failure_count = 0
                self._move_to("CLOSED")
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        self._failure_count += 1
        self._last_failure_time = utc_now()

        if self._state == "HALF_OPEN" or self._failure_count >= self.failure_threshold:
            self._move_to(
                "OPEN",
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0
        self._move_to("CLOSED")


# One breaker per provider per process
circuit_breakers: Dict[str, CircuitBreaker] = {
    "background_removal": CircuitBreaker(
        "background_removal",
        failure_threshold=settings.AI_CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.BACKGROUND_REMOVAL_CIRCUIT_RECOVERY_SECONDS
    ),
    "composite": CircuitBreaker(
        "composite",
        failure_threshold=settings.AI_CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.COMPOSITE_CIRCUIT_RECOVERY_SECONDS
    ),
}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a service."""
    if name not in circuit_breakers:
        circuit_breakers[name] = CircuitBreaker(name)
    return circuit_breakers[name]


# =============================================================================
# Exception Handlers
# =============================================================================

def error_response_body(exc: RoomviewError) -> Dict[str, Any]:
    """Structured JSON body for an engine error."""
    return {
        "error": exc.message,
        "category": exc.category.value,
        "job_id": exc.job_id or job_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(RoomviewError)
    async def roomview_exception_handler(request: Request, exc: RoomviewError):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "request_rejected",
            error=exc.message,
            category=exc.category.value,
            code=exc.code,
            path=str(request.url.path),
            details=exc.details
        )

        headers = {}
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)

        return JSONResponse(
            status_code=exc.code,
            content=error_response_body(exc),
            headers=headers
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "category": ErrorCategory.INTERNAL_INCONSISTENCY.value,
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
