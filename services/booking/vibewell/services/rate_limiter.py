"""
Distributed rate limiter backed by Redis.

Each (subject, action) pair owns a fixed-window counter. Exceeding the limit
swaps the counter for a block record whose TTL is the penalty duration; while
the block exists every call is rejected without touching the counter. Window
and block expiry are Redis TTLs, so node clocks never decide when a window
resets.
"""
import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from vibewell.config import settings
from vibewell.obs.logging import get_logger
from vibewell.obs.metrics import metrics
from vibewell.services.kv_store import KeyValueStore

logger = get_logger(__name__)

PERIOD_SECONDS = {
    'second': 1,
    'minute': 60,
    'hour': 3600,
    'day': 86400,
}

EVENTS_KEY = "rate_limit:events"

_DURATION_RE = re.compile(r'^\s*(\d*)\s*(second|minute|hour|day)s?\s*$')


def parse_duration(value: str) -> int:
    """Parse '15minute', '1hour' or 'day' into seconds."""
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    multiplier = int(match.group(1)) if match.group(1) else 1
    if multiplier <= 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return multiplier * PERIOD_SECONDS[match.group(2)]


def parse_limit(limit_str: str) -> Tuple[int, int]:
    """Parse limit string like '60/minute' or '5/15minute' into (count, seconds)."""
    try:
        count, period = limit_str.split('/')
        count = int(count)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid limit format: {limit_str!r}")
    if count <= 0:
        raise ValueError(f"Invalid limit format: {limit_str!r}")
    return count, parse_duration(period)


def counter_key(action: str, subject: str) -> str:
    return f"rate_limit:count:{action}:{subject}"


def block_key(action: str, subject: str) -> str:
    return f"rate_limit:block:{action}:{subject}"


@dataclass(frozen=True)
class RateLimitPolicy:
    action: str
    limit: int
    window_seconds: int
    block_seconds: int

    @classmethod
    def from_strings(cls, action: str, limit_str: str, block_str: str) -> "RateLimitPolicy":
        limit, window = parse_limit(limit_str)
        return cls(action=action, limit=limit, window_seconds=window, block_seconds=parse_duration(block_str))


def policies_from_settings() -> Dict[str, RateLimitPolicy]:
    return {
        action: RateLimitPolicy.from_strings(action, limit_str, block_str)
        for action, (limit_str, block_str) in settings.RATE_LIMITS.items()
    }


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    limit: int
    reset_at: int
    retry_after: int = 0
    blocked: bool = False
    action: str = ""

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class BlockedSubject:
    subject: str
    action: str
    retry_after: int


class RateLimiter:
    """
    Window-counter plus block rate limiter.

    Block policy: the block duration is fixed from the first violation.
    Blocks are written with NX, so violations while blocked (including
    concurrent ones) never extend it. After the block expires the subject
    starts a fresh window with full quota.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        fail_open: bool = True,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        events_max: int = 1000,
        events_retention_seconds: int = 86400,
        default_action: str = "api",
    ):
        self.store = store
        self.policies = policies if policies is not None else policies_from_settings()
        self.fail_open = fail_open
        self.enabled = enabled and store is not None
        self.clock = clock
        self.events_max = events_max
        self.events_retention_seconds = events_retention_seconds
        self.default_action = default_action

    @classmethod
    def from_settings(cls, store: Optional[KeyValueStore]) -> "RateLimiter":
        return cls(
            store,
            policies=policies_from_settings(),
            fail_open=settings.RATE_LIMIT_FAIL_OPEN,
            enabled=settings.is_rate_limiting_enabled(),
            events_max=settings.RATE_LIMIT_EVENTS_MAX,
            events_retention_seconds=settings.RATE_LIMIT_EVENTS_RETENTION_SECONDS,
        )

    def policy_for(self, action: str) -> RateLimitPolicy:
        policy = self.policies.get(action)
        if policy is None:
            policy = self.policies[self.default_action]
            logger.warning(
                f"No rate limit policy for action {action!r}, using {self.default_action!r}",
                extra={'action': action},
            )
        return policy

    def check_and_consume(
        self,
        subject: str,
        action: str,
        path: Optional[str] = None,
        method: Optional[str] = None,
    ) -> RateLimitDecision:
        """Consume one point for (subject, action) and report whether the call may proceed."""
        policy = self.policy_for(action)
        now = int(self.clock())

        if not self.enabled:
            return RateLimitDecision(True, policy.limit, policy.limit, now + policy.window_seconds, action=action)

        count_key = counter_key(policy.action, subject)
        blk_key = block_key(policy.action, subject)

        try:
            consumption = self.store.consume(count_key, policy.window_seconds, blk_key)

            if consumption.blocked_for != -2:
                # A block without expiry is treated as one full penalty period
                retry_after = consumption.blocked_for if consumption.blocked_for > 0 else policy.block_seconds
                metrics.record_rate_limit_decision(policy.action, "blocked")
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    limit=policy.limit,
                    reset_at=now + retry_after,
                    retry_after=retry_after,
                    blocked=True,
                    action=policy.action,
                )

            if consumption.count <= policy.limit:
                metrics.record_rate_limit_decision(policy.action, "allowed")
                return RateLimitDecision(
                    allowed=True,
                    remaining=policy.limit - consumption.count,
                    limit=policy.limit,
                    reset_at=now + consumption.ttl,
                    action=policy.action,
                )

            retry_after = self.store.replace_with_block(count_key, blk_key, policy.block_seconds)
        except RedisError as e:
            return self._store_unavailable(policy, subject, now, e)

        metrics.record_rate_limit_decision(policy.action, "limited")
        logger.warning(
            "Rate limit exceeded, subject blocked",
            extra={'subject': subject, 'action': policy.action, 'retry_after': retry_after, 'route': path},
        )
        self._record_event("exceeded", subject, policy.action, path=path, method=method,
                           remaining=0, reset_at=now + retry_after)

        return RateLimitDecision(
            allowed=False,
            remaining=0,
            limit=policy.limit,
            reset_at=now + retry_after,
            retry_after=retry_after,
            blocked=True,
            action=policy.action,
        )

    def _store_unavailable(self, policy: RateLimitPolicy, subject: str, now: int, error: Exception) -> RateLimitDecision:
        metrics.record_rate_limit_store_error(self.fail_open)
        logger.error(
            f"Rate limit store unavailable ({'failing open' if self.fail_open else 'failing closed'}): {error}",
            extra={'subject': subject, 'action': policy.action, 'error_type': type(error).__name__},
        )
        if self.fail_open:
            metrics.record_rate_limit_decision(policy.action, "fail_open")
            return RateLimitDecision(True, policy.limit, policy.limit, now + policy.window_seconds, action=policy.action)

        metrics.record_rate_limit_decision(policy.action, "fail_closed")
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            limit=policy.limit,
            reset_at=now + policy.window_seconds,
            retry_after=policy.window_seconds,
            action=policy.action,
        )

    # Admin remediation

    def reset(self, subject: str, action: Optional[str] = None) -> int:
        """Clear counters and blocks for one action, or for every configured action."""
        actions = [self.policy_for(action).action] if action else sorted(self.policies)
        keys = []
        for name in actions:
            keys.extend([counter_key(name, subject), block_key(name, subject)])

        deleted = self.store.delete(*keys)
        logger.info(
            f"Rate limit state reset ({deleted} keys)",
            extra={'subject': subject, 'action': action or "*"},
        )
        self._record_event("reset", subject, action or "*")
        return deleted

    def block(self, subject: str, action: str, seconds: Optional[int] = None) -> RateLimitDecision:
        """Manually block a subject. Overwrites any existing block."""
        policy = self.policy_for(action)
        duration = seconds or policy.block_seconds
        now = int(self.clock())

        self.store.set(block_key(policy.action, subject), "manual", ttl=duration)
        self.store.delete(counter_key(policy.action, subject))

        logger.warning(
            "Subject manually blocked",
            extra={'subject': subject, 'action': policy.action, 'retry_after': duration},
        )
        self._record_event("blocked", subject, policy.action, remaining=0, reset_at=now + duration)
        return RateLimitDecision(False, 0, policy.limit, now + duration, duration, True, policy.action)

    def unblock(self, subject: str, action: str) -> bool:
        policy = self.policy_for(action)
        removed = self.store.delete(block_key(policy.action, subject)) > 0
        if removed:
            self._record_event("unblocked", subject, policy.action)
        return removed

    def blocked_subjects(self) -> List[BlockedSubject]:
        blocked = []
        for key in self.store.scan("rate_limit:block:*"):
            # rate_limit:block:{action}:{subject}; subjects may contain ':'
            parts = key.split(":", 3)
            if len(parts) != 4:
                continue
            ttl = self.store.ttl(key)
            if ttl == -2:
                continue
            blocked.append(BlockedSubject(subject=parts[3], action=parts[2], retry_after=max(ttl, 0)))
        return sorted(blocked, key=lambda b: (b.action, b.subject))

    def recent_events(self, limit: int = 100) -> List[Dict]:
        return [json.loads(member) for member in self.store.recent_events(EVENTS_KEY, limit)]

    def purge_events(self) -> int:
        cutoff = self.clock() - self.events_retention_seconds
        purged = self.store.purge_events(EVENTS_KEY, cutoff)
        if purged:
            logger.info(f"Purged {purged} rate limit events")
        return purged

    def _record_event(
        self,
        kind: str,
        subject: str,
        action: str,
        path: Optional[str] = None,
        method: Optional[str] = None,
        remaining: Optional[int] = None,
        reset_at: Optional[int] = None,
    ) -> None:
        now = self.clock()
        event = {
            "id": str(uuid.uuid4()),
            "subject": subject,
            "action": action,
            "kind": kind,
            "path": path,
            "method": method,
            "remaining": remaining,
            "reset_at": reset_at,
            "timestamp": int(now),
        }
        try:
            self.store.add_event(EVENTS_KEY, json.dumps(event, sort_keys=True), now, self.events_max)
        except RedisError as e:
            # best-effort
            logger.warning(f"Failed to record rate limit event: {e}", extra={'subject': subject, 'action': action})
