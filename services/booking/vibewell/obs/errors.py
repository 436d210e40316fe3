"""
RFC-7807 compliant error handling for the VibeWell booking core.
Defines the booking error taxonomy and renders every error as a
problem-details response with trace correlation.
"""
import traceback
from typing import Any, Dict, Optional
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException
from vibewell.obs.logging import get_logger, log_error
from vibewell.obs.tracing import get_current_trace_id

logger = get_logger(__name__)


class ProblemDetail:
    """RFC-7807 Problem Details for HTTP APIs."""

    def __init__(
        self,
        type: str,
        title: str,
        detail: str,
        status: int,
        instance: Optional[str] = None,
        trace_id: Optional[str] = None,
        **kwargs
    ):
        self.type = type
        self.title = title
        self.detail = detail
        self.status = status
        self.instance = instance
        self.trace_id = trace_id
        self.extensions = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        result = {
            "type": self.type,
            "title": self.title,
            "detail": self.detail,
            "status": self.status,
        }

        if self.instance:
            result["instance"] = self.instance

        if self.trace_id:
            result["trace_id"] = self.trace_id

        result.update(self.extensions)

        return result


# Booking error taxonomy

class BookingError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.6.1"
    title = "Booking Error"
    error_code = "booking_error"

    def __init__(self, detail: str, **extensions):
        super().__init__(detail)
        self.detail = detail
        self.extensions = extensions

    def headers(self) -> Dict[str, str]:
        return {}

    @classmethod
    def restore(cls, detail: str, **extensions) -> "BookingError":
        """Rebuild a recorded error of this class from its stored detail and extensions."""
        error = cls.__new__(cls)
        BookingError.__init__(error, detail, **extensions)
        for name, value in extensions.items():
            if not hasattr(error, name):
                setattr(error, name, value)
        return error


class RateLimited(BookingError):
    """Caller exceeded its quota or is inside a block window."""

    status_code = 429
    error_type = "https://tools.ietf.org/html/rfc6585#section-4"
    title = "Too Many Requests"
    error_code = "rate_limited"

    def __init__(self, retry_after: int, reset_at: int, limit: int, action: str, blocked: bool = False):
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            retry_after=retry_after,
            reset_at=reset_at,
            action=action,
            blocked=blocked,
        )
        self.retry_after = retry_after
        self.reset_at = reset_at
        self.limit = limit
        self.action = action
        self.blocked = blocked

    def headers(self) -> Dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
        }


class SlotConflict(BookingError):
    """The requested slot is already held by another reservation."""

    status_code = 409
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.5.8"
    title = "Slot Unavailable"
    error_code = "slot_conflict"


class ReservationExpired(BookingError):
    """The reservation hold ran out before it was confirmed."""

    status_code = 409
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.5.8"
    title = "Reservation Expired"
    error_code = "reservation_expired"


class InvalidStateTransition(BookingError):
    status_code = 409
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.5.8"
    title = "Invalid State Transition"
    error_code = "invalid_state_transition"


class NotFoundError(BookingError):
    status_code = 404
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.5.4"
    title = "Not Found"
    error_code = "not_found"


class TransientFailure(BookingError):
    """Network, timeout or gateway error that may succeed on retry."""

    status_code = 503
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.6.4"
    title = "Service Temporarily Unavailable"
    error_code = "transient_failure"


class PermanentFailure(BookingError):
    """Validation error or non-retryable decline. Never retried."""

    status_code = 422
    error_type = "https://tools.ietf.org/html/rfc4918#section-11.2"
    title = "Operation Failed"
    error_code = "permanent_failure"


class RetryExhausted(PermanentFailure):
    """Transient failures persisted through every allowed attempt."""

    status_code = 502
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.6.3"
    title = "Upstream Failure"
    error_code = "retry_exhausted"

    def __init__(self, last_error: BaseException, attempts: int, operation: str = "operation"):
        super().__init__(
            f"{operation} failed after {attempts} attempts",
            attempts=attempts,
        )
        self.last_error = last_error
        self.attempts = attempts


class PaymentDeclined(PermanentFailure):
    status_code = 402
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.5.2"
    title = "Payment Failed"
    error_code = "payment_declined"


class IdempotencyConflict(BookingError):
    """A call with the same idempotency key is in flight or used a different payload."""

    status_code = 409
    error_type = "https://tools.ietf.org/html/rfc7231#section-6.5.8"
    title = "Idempotency Conflict"
    error_code = "idempotency_conflict"


def error_class_for(error_code: Optional[str]) -> type:
    """
    Return the BookingError subclass that raises ``error_code``.

    Falls back to BookingError for codes recorded from unexpected exceptions.
    RateLimited is never recorded by an operation and is not restorable.
    """
    pending = list(BookingError.__subclasses__())
    while pending:
        cls = pending.pop(0)
        if cls.error_code == error_code and cls is not RateLimited:
            return cls
        pending.extend(cls.__subclasses__())
    return BookingError


def create_problem_detail(
    error: Exception,
    request: Request,
    status_code: int = 500,
    error_type: str = "about:blank",
    title: str = "Internal Server Error",
    detail: Optional[str] = None,
    **extensions
) -> ProblemDetail:
    """Create a ProblemDetail from an exception."""
    trace_id = getattr(request.state, 'trace_id', None) or get_current_trace_id()

    if detail is None:
        detail = str(error)

    return ProblemDetail(
        type=error_type,
        title=title,
        detail=detail,
        status=status_code,
        instance=request.url.path,
        trace_id=trace_id,
        **extensions
    )


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    """Render booking errors with their taxonomy type and extensions."""
    problem = create_problem_detail(
        error=exc,
        request=request,
        status_code=exc.status_code,
        error_type=exc.error_type,
        title=exc.title,
        detail=exc.detail,
        error_code=exc.error_code,
        **exc.extensions
    )

    if exc.status_code >= 500:
        log_error(
            logger=logger,
            error=exc,
            trace_id=problem.trace_id,
            subject=getattr(request.state, 'subject', None),
            route=request.url.path,
            method=request.method,
            status=exc.status_code,
        )
    else:
        logger.warning(
            f"{exc.title}: {exc.detail}",
            extra={
                'trace_id': problem.trace_id,
                'subject': getattr(request.state, 'subject', None),
                'route': request.url.path,
                'method': request.method,
                'status': exc.status_code,
            }
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(problem.to_dict()),
        headers=exc.headers(),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC-7807 format."""
    problem = create_problem_detail(
        error=exc,
        request=request,
        status_code=exc.status_code,
        error_type="https://tools.ietf.org/html/rfc7231#section-6.5",
        title="HTTP Error",
        detail=exc.detail
    )

    logger.warning(
        f"HTTP error {exc.status_code}: {exc.detail}",
        extra={
            'trace_id': problem.trace_id,
            'route': request.url.path,
            'method': request.method,
            'status': exc.status_code,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(problem.to_dict()),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with RFC-7807 format."""
    problem = create_problem_detail(
        error=exc,
        request=request,
        status_code=422,
        error_type="https://tools.ietf.org/html/rfc4918#section-11.2",
        title="Validation Error",
        detail="Request validation failed"
    )

    problem.extensions["validation_errors"] = exc.errors()

    logger.warning(
        "Request validation failed",
        extra={
            'trace_id': problem.trace_id,
            'route': request.url.path,
            'method': request.method,
            'status': 422,
        }
    )

    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(problem.to_dict())
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general exceptions with RFC-7807 format."""
    problem = create_problem_detail(
        error=exc,
        request=request,
        status_code=500,
        error_type="https://tools.ietf.org/html/rfc7231#section-6.6.1",
        title="Internal Server Error",
        detail="An unexpected error occurred"
    )

    log_error(
        logger=logger,
        error=exc,
        trace_id=problem.trace_id,
        subject=getattr(request.state, 'subject', None),
        route=request.url.path,
        method=request.method,
        status=500,
        stack_trace=traceback.format_exc(),
    )

    return JSONResponse(
        status_code=500,
        content=jsonable_encoder(problem.to_dict())
    )


def register_error_handlers(app):
    """Register all error handlers with the FastAPI app."""
    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    return app
