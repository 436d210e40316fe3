"""
Tests for the distributed rate limiter (window counter plus block).
"""
import threading
from unittest.mock import patch

import pytest
from redis.exceptions import RedisError, WatchError

from vibewell.services.kv_store import KeyValueStore
from vibewell.services.rate_limiter import (
    RateLimitPolicy,
    RateLimiter,
    block_key,
    counter_key,
    parse_duration,
    parse_limit,
)

from tests.mocks.fake_redis import BrokenRedis


def login_limiter(kv_store, clock, block_str="15minute", **kwargs):
    policies = {
        "login": RateLimitPolicy.from_strings("login", "5/15minute", block_str),
        "api": RateLimitPolicy.from_strings("api", "60/minute", "1minute"),
    }
    return RateLimiter(kv_store, policies=policies, clock=clock.time, **kwargs)


class TestLimitParsing:
    """Test limit and duration strings."""

    def test_parse_limit_formats(self):
        assert parse_limit("60/minute") == (60, 60)
        assert parse_limit("5/15minute") == (5, 900)
        assert parse_limit("3/hour") == (3, 3600)
        assert parse_limit("1000/day") == (1000, 86400)

    def test_parse_duration(self):
        assert parse_duration("1hour") == 3600
        assert parse_duration("15minute") == 900
        assert parse_duration("30seconds") == 30
        assert parse_duration("day") == 86400

    @pytest.mark.parametrize("value", ["", "five/minute", "5/fortnight", "0/minute", "5", "5/0minute"])
    def test_invalid_limits_rejected(self, value):
        with pytest.raises(ValueError):
            parse_limit(value)

    def test_policies_loaded_from_settings(self, rate_limiter):
        login = rate_limiter.policy_for("login")
        assert (login.limit, login.window_seconds, login.block_seconds) == (5, 900, 3600)
        signup = rate_limiter.policy_for("signup")
        assert (signup.limit, signup.window_seconds) == (3, 3600)


class TestCheckAndConsume:
    """Test window counting and blocking."""

    def test_login_limit_then_block(self, kv_store, clock):
        """5 logins succeed with 4..0 remaining, the 6th is rejected for ~15 minutes."""
        limiter = login_limiter(kv_store, clock)
        now = int(clock.time())

        remaining = []
        for _ in range(5):
            decision = limiter.check_and_consume("ip:10.0.0.1", "login")
            assert decision.allowed is True
            remaining.append(decision.remaining)
        assert remaining == [4, 3, 2, 1, 0]

        sixth = limiter.check_and_consume("ip:10.0.0.1", "login")
        assert sixth.allowed is False
        assert sixth.blocked is True
        assert sixth.remaining == 0
        assert abs(sixth.reset_at - (now + 900)) <= 1
        assert sixth.retry_after == 900

    def test_block_replaces_counter(self, kv_store, clock, fake_redis):
        limiter = login_limiter(kv_store, clock)
        for _ in range(6):
            limiter.check_and_consume("ip:10.0.0.1", "login")

        assert fake_redis.get(counter_key("login", "ip:10.0.0.1")) is None
        assert fake_redis.get(block_key("login", "ip:10.0.0.1")) is not None

    def test_calls_while_blocked_do_not_touch_counter(self, kv_store, clock, fake_redis):
        limiter = login_limiter(kv_store, clock)
        for _ in range(6):
            limiter.check_and_consume("ip:10.0.0.1", "login")

        for _ in range(3):
            decision = limiter.check_and_consume("ip:10.0.0.1", "login")
            assert decision.allowed is False
            assert decision.blocked is True

        assert fake_redis.get(counter_key("login", "ip:10.0.0.1")) is None

    def test_block_is_not_extended_by_further_violations(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock, block_str="1hour")
        for _ in range(6):
            limiter.check_and_consume("ip:10.0.0.1", "login")

        clock.advance(minutes=40)
        decision = limiter.check_and_consume("ip:10.0.0.1", "login")
        assert decision.allowed is False
        assert decision.retry_after == 20 * 60

    def test_fresh_window_after_block_expires(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        for _ in range(6):
            limiter.check_and_consume("ip:10.0.0.1", "login")

        clock.advance(minutes=15, seconds=1)
        decision = limiter.check_and_consume("ip:10.0.0.1", "login")
        assert decision.allowed is True
        assert decision.remaining == 4

    def test_window_resets_without_violation(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        for _ in range(3):
            limiter.check_and_consume("ip:10.0.0.1", "login")

        clock.advance(minutes=15, seconds=1)
        decision = limiter.check_and_consume("ip:10.0.0.1", "login")
        assert decision.remaining == 4

    def test_reset_at_tracks_window_start(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        first = limiter.check_and_consume("ip:10.0.0.1", "login")
        clock.advance(minutes=5)
        second = limiter.check_and_consume("ip:10.0.0.1", "login")
        assert first.reset_at == second.reset_at

    def test_subjects_and_actions_are_independent(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        for _ in range(6):
            limiter.check_and_consume("ip:10.0.0.1", "login")

        assert limiter.check_and_consume("ip:10.0.0.2", "login").allowed is True
        assert limiter.check_and_consume("ip:10.0.0.1", "api").allowed is True

    def test_unknown_action_uses_api_policy(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        decision = limiter.check_and_consume("ip:10.0.0.1", "exports")
        assert decision.allowed is True
        assert decision.limit == 60
        assert decision.action == "api"

    def test_decision_headers(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        decision = limiter.check_and_consume("ip:10.0.0.1", "login")
        headers = decision.headers()
        assert headers["X-RateLimit-Limit"] == "5"
        assert headers["X-RateLimit-Remaining"] == "4"
        assert "Retry-After" not in headers

    def test_disabled_limiter_allows_everything(self, kv_store, clock, fake_redis):
        limiter = login_limiter(kv_store, clock, enabled=False)
        for _ in range(10):
            assert limiter.check_and_consume("ip:10.0.0.1", "login").allowed is True
        assert fake_redis.get(counter_key("login", "ip:10.0.0.1")) is None


class TestConcurrency:
    """Test check-and-consume under contention."""

    def test_concurrent_callers_get_exactly_limit_points(self, kv_store, clock):
        """Twelve simultaneous logins against a limit of 5: exactly 5 are allowed."""
        limiter = login_limiter(kv_store, clock)
        barrier = threading.Barrier(12)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            decision = limiter.check_and_consume("ip:10.0.0.1", "login")
            with lock:
                outcomes.append(decision)

        threads = [threading.Thread(target=attempt) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        allowed = [decision for decision in outcomes if decision.allowed]
        assert len(outcomes) == 12
        assert len(allowed) == 5
        assert sorted(decision.remaining for decision in allowed) == [0, 1, 2, 3, 4]
        assert all(decision.retry_after > 0 for decision in outcomes if not decision.allowed)

    def test_block_written_mid_consume_retries_and_denies(self, kv_store, fake_redis):
        """Another instance blocks the subject between the check and EXEC."""
        original_ttl = fake_redis.ttl
        written = []

        def ttl_then_block(key):
            result = original_ttl(key)
            if key == "block" and not written:
                written.append(key)
                fake_redis.set("block", "1", ex=600)
            return result

        with patch.object(fake_redis, "ttl", side_effect=ttl_then_block):
            consumption = kv_store.consume("counter", 900, "block")

        assert consumption.blocked_for == 600
        assert consumption.count == 0
        assert fake_redis.get("counter") is None

    def test_watched_key_change_aborts_transaction(self, fake_redis):
        pipe = fake_redis.pipeline()
        pipe.watch("block")
        fake_redis.set("block", "1", ex=60)
        pipe.multi()
        pipe.incr("counter")

        with pytest.raises(WatchError):
            pipe.execute()
        assert fake_redis.get("counter") is None


class TestStoreFailure:
    """Test behavior when Redis is unreachable."""

    def test_fail_open_allows_requests(self, clock):
        limiter = login_limiter(KeyValueStore(BrokenRedis()), clock, fail_open=True)
        decision = limiter.check_and_consume("ip:10.0.0.1", "login")
        assert decision.allowed is True

    def test_fail_closed_rejects_requests(self, clock):
        limiter = login_limiter(KeyValueStore(BrokenRedis()), clock, fail_open=False)
        decision = limiter.check_and_consume("ip:10.0.0.1", "login")
        assert decision.allowed is False
        assert decision.blocked is False
        assert decision.retry_after == 900


class TestRemediation:
    """Test admin reset, manual block and event log."""

    def test_reset_clears_counter_and_block(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        for _ in range(6):
            limiter.check_and_consume("ip:10.0.0.1", "login")

        assert limiter.reset("ip:10.0.0.1", "login") == 1
        decision = limiter.check_and_consume("ip:10.0.0.1", "login")
        assert decision.allowed is True
        assert decision.remaining == 4

    def test_reset_all_actions(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        limiter.check_and_consume("ip:10.0.0.1", "login")
        limiter.check_and_consume("ip:10.0.0.1", "api")

        assert limiter.reset("ip:10.0.0.1") == 2

    def test_manual_block_and_unblock(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        blocked = limiter.block("user:42", "login", seconds=120)
        assert blocked.retry_after == 120

        decision = limiter.check_and_consume("user:42", "login")
        assert decision.allowed is False
        assert decision.retry_after == 120

        assert limiter.unblock("user:42", "login") is True
        assert limiter.check_and_consume("user:42", "login").allowed is True
        assert limiter.unblock("user:42", "login") is False

    def test_blocked_subjects_keeps_colons_in_subject(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        for _ in range(6):
            limiter.check_and_consume("ip:2001:db8::1", "login")

        blocked = limiter.blocked_subjects()
        assert len(blocked) == 1
        assert blocked[0].subject == "ip:2001:db8::1"
        assert blocked[0].action == "login"
        assert blocked[0].retry_after == 900

    def test_events_recorded_newest_first(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock)
        for _ in range(6):
            limiter.check_and_consume("ip:10.0.0.1", "login", path="/auth/login", method="POST")
        clock.advance(seconds=5)
        limiter.reset("ip:10.0.0.1", "login")

        events = limiter.recent_events(10)
        assert [event["kind"] for event in events] == ["reset", "exceeded"]
        assert events[1]["path"] == "/auth/login"
        assert events[1]["subject"] == "ip:10.0.0.1"

    def test_event_log_is_capped(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock, events_max=3)
        for n in range(5):
            clock.advance(seconds=1)
            limiter.block(f"user:{n}", "login", seconds=60)

        events = limiter.recent_events(10)
        assert [event["subject"] for event in events] == ["user:4", "user:3", "user:2"]

    def test_purge_events_past_retention(self, kv_store, clock):
        limiter = login_limiter(kv_store, clock, events_retention_seconds=3600)
        limiter.block("user:1", "login", seconds=60)
        clock.advance(hours=2)
        limiter.block("user:2", "login", seconds=60)

        assert limiter.purge_events() == 1
        assert [event["subject"] for event in limiter.recent_events(10)] == ["user:2"]

    def test_manual_block_surfaces_store_errors(self, clock):
        limiter = login_limiter(KeyValueStore(BrokenRedis()), clock)
        with pytest.raises(RedisError):
            limiter.block("user:1", "login")


class TestHTTPEnforcement:
    """Test the 429 contract on real routes."""

    AVAILABILITY = "/api/v1/reservations/availability?business_id=B1&service_id=S1&slot_date=2030-01-07"

    def test_allowed_responses_carry_headers(self, limited_client):
        response = limited_client.get(self.AVAILABILITY)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "20"
        assert response.headers["X-RateLimit-Remaining"] == "19"

    def test_exceeding_limit_returns_429(self, limited_client):
        for _ in range(20):
            assert limited_client.get(self.AVAILABILITY).status_code == 200

        response = limited_client.get(self.AVAILABILITY)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "300"
        assert response.headers["X-RateLimit-Remaining"] == "0"

        body = response.json()
        assert body["status"] == 429
        assert body["error_code"] == "rate_limited"
        assert body["action"] == "reservations"
        assert body["blocked"] is True

    def test_user_header_is_the_subject(self, limited_client):
        for _ in range(21):
            limited_client.get(self.AVAILABILITY, headers={"X-User-Id": "alice"})

        assert limited_client.get(self.AVAILABILITY, headers={"X-User-Id": "alice"}).status_code == 429
        assert limited_client.get(self.AVAILABILITY, headers={"X-User-Id": "bob"}).status_code == 200

    def test_health_is_not_rate_limited(self, limited_client):
        for _ in range(30):
            assert limited_client.get("/health").status_code == 200
