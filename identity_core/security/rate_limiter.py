"""Rate limiting for credential-bearing requests."""

from __future__ import annotations

import hashlib
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Deque, Dict, Protocol


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool: ...


def contact_rate_key(action: str, subject: str) -> str:
    """Build the limiter key for ``action`` against ``subject`` without keeping the raw contact."""
    digest = hashlib.sha256(subject.strip().lower().encode("utf-8")).hexdigest()[:16]
    return f"{action}:{digest}"


class SlidingWindowRateLimiter:
    """Per-process sliding window limiter, used when no Redis is configured."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("rate limit and window must be positive")
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Record a hit for ``key`` and report whether it fits in the current window."""
        now = self._clock()
        cutoff = now - self._window
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self._max_requests:
                return False
            hits.append(now)
            return True

    def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)
