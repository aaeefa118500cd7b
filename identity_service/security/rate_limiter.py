"""In-memory sliding window limiter for failed credential attempts."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Deque, Protocol


class RateLimiter(Protocol):
    """Attempt limiter used by the credential endpoints.

    Callers check :meth:`allow` before doing work, :meth:`record` attempts
    that count against the key (failed logins, reset requests) and
    :meth:`reset` a key once its owner has authenticated.
    """

    def allow(self, key: str) -> bool: ...

    def record(self, key: str) -> None: ...

    def reset(self, key: str) -> None: ...


class SlidingWindowRateLimiter:
    """Thread-safe sliding window limiter scoped to a single process."""

    def __init__(self, max_requests: int, window_seconds: int, key_prefix: str = "rate") -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._key_prefix = key_prefix
        self._events: dict[str, Deque[float]] = {}
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Return ``True`` while fewer than ``max_requests`` attempts fall inside the window."""
        bucket = f"{self._key_prefix}:{key}"
        with self._lock:
            queue = self._trim(bucket, time.monotonic())
            return queue is None or len(queue) < self._max_requests

    def record(self, key: str) -> None:
        now = time.monotonic()
        bucket = f"{self._key_prefix}:{key}"
        with self._lock:
            queue = self._trim(bucket, now)
            if queue is None:
                queue = self._events[bucket] = deque()
            queue.append(now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._events.pop(f"{self._key_prefix}:{key}", None)

    def _trim(self, bucket: str, now: float) -> Deque[float] | None:
        queue = self._events.get(bucket)
        if queue is None:
            return None
        while queue and now - queue[0] > self._window:
            queue.popleft()
        if not queue:
            # drop idle keys so one-off usernames do not accumulate
            del self._events[bucket]
            return None
        return queue
