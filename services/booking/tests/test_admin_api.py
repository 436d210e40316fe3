"""
Tests for the admin rate-limit remediation endpoints.
"""
from unittest.mock import patch

import pytest

from vibewell.services.rate_limiter import block_key


@pytest.fixture
def admin_client(limited_client):
    return limited_client


class TestAdminAuth:
    """Test X-Admin-Token enforcement."""

    def test_missing_token_rejected(self, admin_client):
        response = admin_client.get("/admin/rate-limits/blocked")
        assert response.status_code == 401

    def test_wrong_token_rejected(self, admin_client):
        response = admin_client.get("/admin/rate-limits/blocked", headers={"X-Admin-Token": "nope"})
        assert response.status_code == 403

    def test_unconfigured_token_closes_admin_api(self, admin_client, admin_headers):
        with patch("vibewell.deps.admin_auth.settings") as mock_settings:
            mock_settings.ADMIN_API_TOKEN = ""
            response = admin_client.get("/admin/rate-limits/blocked", headers=admin_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "Admin API is not configured"


class TestRemediationEndpoints:
    """Test reset, block and listing."""

    def test_block_then_list(self, admin_client, admin_headers):
        response = admin_client.post(
            "/admin/rate-limits/ip:203.0.113.9/block",
            json={"action": "login", "seconds": 600},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["retry_after"] == 600

        blocked = admin_client.get("/admin/rate-limits/blocked", headers=admin_headers).json()["data"]
        assert blocked == [{"subject": "ip:203.0.113.9", "action": "login", "retry_after": 600}]

    def test_reset_unblocks_subject(self, admin_client, admin_headers, rate_limiter, fake_redis):
        rate_limiter.block("user:42", "login", seconds=600)

        response = admin_client.delete("/admin/rate-limits/user:42", params={"action": "login"}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["data"]["keys_deleted"] == 1
        assert fake_redis.get(block_key("login", "user:42")) is None
        assert rate_limiter.check_and_consume("user:42", "login").allowed is True

    def test_reset_all_actions(self, admin_client, admin_headers, rate_limiter):
        rate_limiter.block("user:42", "login", seconds=600)
        rate_limiter.block("user:42", "payments", seconds=600)

        response = admin_client.delete("/admin/rate-limits/user:42", headers=admin_headers)

        assert response.json()["data"]["keys_deleted"] == 2
        assert response.json()["data"]["action"] is None

    def test_unknown_action_returns_404(self, admin_client, admin_headers):
        response = admin_client.delete("/admin/rate-limits/user:42", params={"action": "teleport"}, headers=admin_headers)
        assert response.status_code == 404

    def test_events_endpoint(self, admin_client, admin_headers, rate_limiter):
        rate_limiter.block("user:42", "login", seconds=600)

        events = admin_client.get("/admin/rate-limits/events", params={"limit": 5}, headers=admin_headers).json()
        assert events["data"]["events"][0]["kind"] == "blocked"
        assert events["data"]["events"][0]["subject"] == "user:42"

    def test_admin_routes_are_rate_limited(self, admin_client, admin_headers):
        response = admin_client.get("/admin/rate-limits/blocked", headers=admin_headers)
        assert response.headers["X-RateLimit-Limit"] == "30"

    def test_store_not_configured(self, client, admin_headers):
        response = client.get("/admin/rate-limits/blocked", headers=admin_headers)
        assert response.status_code == 503
