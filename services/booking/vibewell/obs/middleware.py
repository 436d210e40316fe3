"""
Request observability for the booking API.

Every request gets a trace id (echoed back as X-Request-Id), a span, a
latency sample and one structured log line. The span and the log line also
carry what the booking core decided about the request: the rate-limit
action and remaining quota, and the reservation or transaction it touched.
"""
import time
from typing import Any, Callable, Dict, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from vibewell.obs.logging import extract_trace_id, get_logger, log_error, log_request
from vibewell.obs.metrics import record_http_request
from vibewell.obs.tracing import add_span_attributes, add_span_error, get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

UNTRACED_PATHS = ('/health', '/ready', '/metrics', '/docs', '/openapi.json')

RESOURCE_PARAMS = ('reservation_id', 'transaction_id')


def booking_context(request: Request) -> Dict[str, Any]:
    """Rate-limit outcome and resource ids gathered while the request was handled."""
    context = {}

    subject = getattr(request.state, 'subject', None)
    if subject:
        context['subject'] = subject

    decision = getattr(request.state, 'rate_limit', None)
    if decision is not None:
        context['action'] = decision.action
        context['remaining'] = decision.remaining

    # Filled in by the router once the route has matched
    path_params = request.scope.get('path_params') or {}
    for name in RESOURCE_PARAMS:
        if path_params.get(name):
            context[name] = path_params[name]

    return context


def span_attributes(context: Dict[str, Any]) -> Dict[str, Any]:
    return {f"booking.{name}": value for name, value in context.items()}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Trace, time and log each booking API request."""

    def __init__(self, app, exclude_paths: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.exclude_paths = tuple(exclude_paths or UNTRACED_PATHS)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(self.exclude_paths):
            return await call_next(request)

        start_time = time.time()
        trace_id = extract_trace_id(request)
        request.state.trace_id = trace_id

        with tracer.start_as_current_span(
            f"{request.method} {request.url.path}",
            attributes={
                "http.method": request.method,
                "http.route": request.url.path,
                "trace_id": trace_id,
            },
        ):
            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = (time.time() - start_time) * 1000
                context = booking_context(request)
                add_span_error(e, span_attributes(context))
                record_http_request(request.url.path, request.method, 500, duration_ms)
                log_error(logger, e, trace_id, route=request.url.path, method=request.method, **context)
                raise

            duration_ms = (time.time() - start_time) * 1000
            context = booking_context(request)
            add_span_attributes({"http.status_code": response.status_code, **span_attributes(context)})
            response.headers["X-Request-Id"] = trace_id

            record_http_request(request.url.path, request.method, response.status_code, duration_ms)
            log_request(logger, request, response.status_code, duration_ms, trace_id, **context)
            return response
