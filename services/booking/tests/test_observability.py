"""
Tests for logging, error rendering, identity and health endpoints.
"""
import json
import logging
import uuid
from unittest.mock import MagicMock, Mock

from fastapi import Request

from vibewell.core.identity import client_ip, subject_for
from vibewell.deps.services import get_payment_gateway
from vibewell.main import app
from vibewell.obs.errors import RateLimited, SlotConflict
from vibewell.obs.logging import PIIRedactor, StructuredFormatter, extract_trace_id, generate_trace_id
from vibewell.obs.sentry import before_send_event


def make_request(headers, host="198.51.100.7"):
    request = Mock(spec=Request)
    request.headers = headers
    request.client = Mock(host=host)
    return request


class TestLogging:
    """Test structured logging functionality."""

    def test_generate_trace_id(self):
        trace_id = generate_trace_id()
        assert len(trace_id) == 36
        uuid.UUID(trace_id)

    def test_extract_trace_id_from_header(self):
        request = make_request({"X-Request-Id": "test-trace-id-123"})
        assert extract_trace_id(request) == "test-trace-id-123"

    def test_extract_trace_id_from_traceparent(self):
        request = make_request({"traceparent": "00-12345678901234567890123456789012-1234567890123456-01"})
        assert extract_trace_id(request) == "12345678901234567890123456789012"

    def test_redactor_masks_contact_details_and_keys(self):
        redactor = PIIRedactor(enabled=True)
        message = redactor.redact("customer jane@example.com 555-123-4567 used sk_test_abc123")

        assert "jane@example.com" not in message
        assert "555-123-4567" not in message
        assert "sk_test_abc123" not in message
        assert "[REDACTED_EMAIL]" in message

    def test_structured_formatter_emits_json_with_context(self):
        record = logging.LogRecord("vibewell.test", logging.WARNING, __file__, 1, "Rate limit hit", None, None)
        record.subject = "ip:10.0.0.1"
        record.action = "login"
        record.retry_after = 900

        entry = json.loads(StructuredFormatter(redact_pii=True).format(record))

        assert entry["level"] == "WARNING"
        assert entry["message"] == "Rate limit hit"
        assert entry["subject"] == "ip:10.0.0.1"
        assert entry["action"] == "login"
        assert entry["retry_after"] == 900


class TestIdentity:
    """Test rate-limit subject resolution."""

    def test_user_header_wins(self):
        request = make_request({"X-User-Id": "42", "X-API-Key": "secret"})
        assert subject_for(request) == "user:42"

    def test_api_key_is_hashed(self):
        subject = subject_for(make_request({"X-API-Key": "secret-key"}))
        assert subject.startswith("key:")
        assert "secret-key" not in subject

    def test_forwarded_for_first_hop(self):
        request = make_request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
        assert client_ip(request) == "203.0.113.5"
        assert subject_for(request) == "ip:203.0.113.5"

    def test_falls_back_to_peer_address(self):
        assert subject_for(make_request({})) == "ip:198.51.100.7"


class TestErrorRendering:
    """Test RFC-7807 problem details."""

    def test_rate_limited_headers(self):
        error = RateLimited(retry_after=900, reset_at=1700000900, limit=5, action="login", blocked=True)
        assert error.headers() == {
            "Retry-After": "900",
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1700000900",
        }

    def test_problem_detail_carries_request_id(self, client):
        response = client.get("/api/v1/payments/unknown", headers={"X-Request-Id": "req-123"})

        body = response.json()
        assert response.headers["X-Request-Id"] == "req-123"
        assert body["trace_id"] == "req-123"
        assert body["type"].startswith("https://tools.ietf.org/")
        assert body["title"] == "Not Found"

    def test_missing_gateway_is_service_unavailable(self, client):
        reservation_id = client.post("/api/v1/reservations", json={
            "business_id": "B1",
            "service_id": "S1",
            "slot_date": "2030-01-08",
            "slot_time": "10:00",
            "customer_id": "cust_1",
        }).json()["data"]["id"]
        app.dependency_overrides.pop(get_payment_gateway)

        response = client.post("/api/v1/payments", json={"reservation_id": reservation_id, "amount": 100, "currency": "usd", "payment_method": "pm_card_visa"})

        assert response.status_code == 503
        assert response.json()["error_code"] == "transient_failure"

    def test_sentry_drops_client_errors(self):
        event = {"message": "conflict"}
        assert before_send_event(event, {"exc_info": (SlotConflict, SlotConflict("taken"), None)}) is None
        assert before_send_event(event, {"exc_info": (RuntimeError, RuntimeError("boom"), None)}) == event


class TestHealthEndpoints:
    """Test liveness and readiness."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready_with_database_only(self, client):
        response = client.get("/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": True}

    def test_ready_reports_redis_failure(self, client):
        store = MagicMock()
        store.ping.return_value = False
        app.state.kv_store = store
        try:
            response = client.get("/ready")
        finally:
            app.state.kv_store = None

        assert response.status_code == 503
        assert response.json()["checks"]["redis"] is False

    def test_metrics_endpoint(self, client):
        client.get("/api/v1/payments/unknown")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text


class TestRequestLogging:
    """Test the per-request log line."""

    def test_request_log_carries_rate_limit_and_reservation(self, limited_client, caplog):
        reservation_id = limited_client.post("/api/v1/reservations", json={
            "business_id": "B1",
            "service_id": "S1",
            "slot_date": "2030-01-08",
            "slot_time": "10:00",
            "customer_id": "cust_1",
        }).json()["data"]["id"]

        with caplog.at_level(logging.INFO, logger="vibewell.obs.middleware"):
            response = limited_client.get(f"/api/v1/reservations/{reservation_id}", headers={"X-User-Id": "42"})

        [record] = [r for r in caplog.records if r.name == "vibewell.obs.middleware"]
        assert response.status_code == 200
        assert record.status == 200
        assert record.subject == "user:42"
        assert record.action == "reservations"
        assert record.remaining == 19
        assert record.reservation_id == reservation_id
        assert record.trace_id == response.headers["X-Request-Id"]

    def test_health_checks_are_not_logged(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="vibewell.obs.middleware"):
            client.get("/health")

        assert [r for r in caplog.records if r.name == "vibewell.obs.middleware"] == []
