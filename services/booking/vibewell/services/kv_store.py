"""
Key-value store adapter over Redis.

The client is built once at startup and handed to the components that need
it. Composite operations run inside MULTI/EXEC so that a counter and its
expiry are never observed half-written by another API instance.
"""
from collections import namedtuple
from typing import List, Optional

import redis
from redis.exceptions import WatchError

from vibewell.obs.logging import get_logger

logger = get_logger(__name__)

# blocked_for is -2 when no block key exists (Redis TTL convention)
Consumption = namedtuple("Consumption", ["blocked_for", "count", "ttl"])


class KeyValueStore:
    """Thin wrapper over a redis-py client with the atomic primitives we rely on."""

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0, connect_timeout: float = 2.0) -> "KeyValueStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=connect_timeout,
        )
        logger.info("Redis client configured for key-value store")
        return cls(client)

    def ping(self) -> bool:
        return bool(self.client.ping())

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value, ttl: Optional[int] = None, nx: bool = False) -> bool:
        return bool(self.client.set(key, value, ex=ttl, nx=nx))

    def incr(self, key: str) -> int:
        return int(self.client.incr(key))

    def expire(self, key: str, seconds: int) -> bool:
        return bool(self.client.expire(key, seconds))

    def ttl(self, key: str) -> int:
        return int(self.client.ttl(key))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    def scan(self, pattern: str) -> List[str]:
        return list(self.client.scan_iter(match=pattern, count=500))

    def consume(self, key: str, window_seconds: int, block_key: str) -> Consumption:
        """
        Atomically take one point from the window counter unless a block exists.

        The block key is WATCHed so a block written between the check and the
        increment aborts the transaction and the check is repeated.
        """
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(block_key)
                    blocked_for = int(pipe.ttl(block_key))
                    if blocked_for != -2:
                        pipe.unwatch()
                        return Consumption(blocked_for, 0, 0)

                    pipe.multi()
                    pipe.set(key, 0, nx=True, ex=window_seconds)
                    pipe.incr(key)
                    pipe.ttl(key)
                    _, count, ttl = pipe.execute()
                    break
                except WatchError:
                    continue

        ttl = int(ttl)
        if ttl < 0:
            # Counter lost its expiry; re-arm so the window cannot become permanent
            self.client.expire(key, window_seconds)
            ttl = window_seconds
        return Consumption(-2, int(count), ttl)

    def replace_with_block(self, counter_key: str, block_key: str, block_seconds: int) -> int:
        """
        Swap the window counter for a block record and return the block TTL.

        The block is written with NX so concurrent violators share the first
        block instead of extending it.
        """
        pipe = self.client.pipeline(transaction=True)
        pipe.set(block_key, "1", nx=True, ex=block_seconds)
        pipe.delete(counter_key)
        pipe.ttl(block_key)
        _, _, ttl = pipe.execute()
        ttl = int(ttl)
        return ttl if ttl > 0 else block_seconds

    def add_event(self, key: str, member: str, score: float, max_entries: int) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.zadd(key, {member: score})
        pipe.zremrangebyrank(key, 0, -(max_entries + 1))
        pipe.execute()

    def recent_events(self, key: str, limit: int) -> List[str]:
        return list(self.client.zrevrange(key, 0, max(limit, 1) - 1))

    def purge_events(self, key: str, older_than: float) -> int:
        return int(self.client.zremrangebyscore(key, "-inf", older_than))

    def close(self) -> None:
        self.client.close()
