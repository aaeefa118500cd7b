"""Redis-backed failed-attempt limiter shared by all service replicas."""

from __future__ import annotations

import time
import uuid

from redis import Redis


class RedisSlidingWindowRateLimiter:
    """Distributed counterpart of :class:`SlidingWindowRateLimiter`.

    Attempts live in one sorted set per key, scored by their time in
    milliseconds. Entries older than the window are trimmed on every access
    and the set expires once the window passes without new attempts.
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "identity:attempts",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix

    def allow(self, key: str) -> bool:
        now_ms = int(time.time() * 1000)
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(self._redis_key(key), 0, now_ms - self._window_ms)
        pipe.zcard(self._redis_key(key))
        _, attempts = pipe.execute()
        return int(attempts) < self._max_requests

    def record(self, key: str) -> None:
        now_ms = int(time.time() * 1000)
        redis_key = self._redis_key(key)
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        pipe.zadd(redis_key, {uuid.uuid4().hex: now_ms})
        pipe.pexpire(redis_key, self._window_ms)
        pipe.execute()

    def reset(self, key: str) -> None:
        self._client.delete(self._redis_key(key))

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"
