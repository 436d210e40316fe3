"""
Prometheus metrics for the VibeWell booking core.
Provides metrics for HTTP requests, rate limiting, reservations, payments
and background tasks.
"""
import re
import time
from typing import Optional

from fastapi import Response
from prometheus_client import Counter, Histogram, CONTENT_TYPE_LATEST, generate_latest


# HTTP Request Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['route', 'method', 'status']
)

http_request_duration_ms = Histogram(
    'http_request_duration_ms',
    'HTTP request duration in milliseconds',
    ['route', 'method'],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)
)

# Rate Limiting Metrics
rate_limit_decisions_total = Counter(
    'rate_limit_decisions_total',
    'Rate limiter decisions by action and outcome',
    ['action', 'outcome']
)

rate_limit_store_errors_total = Counter(
    'rate_limit_store_errors_total',
    'Rate limiter KV store failures by applied policy',
    ['policy']
)

# Reservation Metrics
reservations_total = Counter(
    'reservations_total',
    'Reservation engine outcomes',
    ['outcome']
)

reservations_expired_total = Counter(
    'reservations_expired_total',
    'PENDING reservations cancelled after their hold expired'
)

# Payment Metrics
payments_total = Counter(
    'payments_total',
    'Payment transactions by terminal status',
    ['status']
)

gateway_request_duration_ms = Histogram(
    'gateway_request_duration_ms',
    'Payment gateway call duration in milliseconds',
    ['operation'],
    buckets=(10, 50, 100, 250, 500, 1000, 2000, 5000, 10000, 30000)
)

retry_attempts_total = Counter(
    'retry_attempts_total',
    'Retried attempts of transient failures',
    ['operation']
)

# Idempotency Metrics
idempotency_requests_total = Counter(
    'idempotency_requests_total',
    'Idempotency key lookups by result',
    ['scope', 'result']
)

idempotency_purged_total = Counter(
    'idempotency_purged_total',
    'Total number of idempotency records purged'
)

# Celery Task Metrics
worker_task_total = Counter(
    'worker_task_total',
    'Total number of Celery tasks',
    ['name', 'status']
)

worker_task_duration_ms = Histogram(
    'worker_task_duration_ms',
    'Celery task duration in milliseconds',
    ['name'],
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000)
)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self):
        self.start_time = time.time()

    def record_http_request(self, route: str, method: str, status_code: int, duration_ms: float):
        """Record HTTP request metrics."""
        normalized_route = self._normalize_route(route)

        http_requests_total.labels(
            route=normalized_route,
            method=method,
            status=str(status_code)
        ).inc()

        http_request_duration_ms.labels(
            route=normalized_route,
            method=method
        ).observe(duration_ms)

    def record_rate_limit_decision(self, action: str, outcome: str):
        rate_limit_decisions_total.labels(action=action, outcome=outcome).inc()

    def record_rate_limit_store_error(self, fail_open: bool):
        rate_limit_store_errors_total.labels(policy="fail_open" if fail_open else "fail_closed").inc()

    def record_reservation(self, outcome: str):
        reservations_total.labels(outcome=outcome).inc()

    def record_reservations_expired(self, count: int):
        if count:
            reservations_expired_total.inc(count)

    def record_payment(self, status: str):
        payments_total.labels(status=status).inc()

    def record_gateway_call(self, operation: str, duration_ms: float):
        gateway_request_duration_ms.labels(operation=operation).observe(duration_ms)

    def record_retry(self, operation: str):
        retry_attempts_total.labels(operation=operation).inc()

    def record_idempotency(self, scope: str, result: str):
        idempotency_requests_total.labels(scope=scope, result=result).inc()

    def record_idempotency_purged(self, count: int = 1):
        """Record idempotency key purge metrics."""
        idempotency_purged_total.inc(count)

    def record_worker_task(self, task_name: str, status: str, duration_ms: Optional[float] = None):
        """Record Celery task metrics."""
        worker_task_total.labels(
            name=task_name,
            status=status
        ).inc()

        if duration_ms is not None:
            worker_task_duration_ms.labels(name=task_name).observe(duration_ms)

    def _normalize_route(self, route: str) -> str:
        """Normalize route for metrics by replacing dynamic segments."""
        route = re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{uuid}', route)
        route = re.sub(r'/\d+', '/{id}', route)
        route = re.sub(r'/[a-zA-Z0-9_:.-]{20,}', '/{hash}', route)
        return route

    def get_metrics_response(self) -> Response:
        """Get Prometheus metrics in text format."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )


# Global metrics collector instance
metrics = MetricsCollector()


def record_http_request(route: str, method: str, status_code: int, duration_ms: float):
    """Record HTTP request metrics."""
    metrics.record_http_request(route, method, status_code, duration_ms)


def record_worker_task(task_name: str, status: str, duration_ms: Optional[float] = None):
    """Record Celery task metrics."""
    metrics.record_worker_task(task_name, status, duration_ms)
