"""Redis-backed sliding window rate limiter shared across replicas."""

from __future__ import annotations

import logging
import time
from typing import Callable, Final

from redis import Redis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger(__name__)


class RedisSlidingWindowRateLimiter:
    """Distributed sliding window limiter implemented with Redis sorted sets.

    When Redis itself is unreachable the limiter fails open: the per-account
    lockout policy still bounds password guessing, and login must not become
    unavailable because a throttle cache is down.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local counter_key = key .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    local current = redis.call('ZCARD', key)
    if current >= max_requests then
        return 0
    end
    local seq = redis.call('INCR', counter_key)
    redis.call('PEXPIRE', counter_key, window_ms)
    local member = tostring(now_ms) .. ':' .. tostring(seq)
    redis.call('ZADD', key, now_ms, member)
    redis.call('PEXPIRE', key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "identity:rate",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise the Redis client, window configuration, and Lua script cache."""
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._clock = clock
        self._script = client.register_script(self._LUA_SCRIPT)

    def allow(self, key: str) -> bool:
        """Return ``True`` when the key is still within the distributed rate limit."""
        now_ms = int(self._clock() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        try:
            try:
                result = self._script(keys=[redis_key], args=[self._window_ms, self._max_requests, now_ms])
                return int(result) == 1
            except ResponseError as exc:
                message = str(exc).lower()
                if "unknown command" in message and "eval" in message:
                    return self._allow_fallback(redis_key, now_ms)
                raise
        except RedisError as exc:
            logger.warning("redis rate limiter unavailable, allowing request: %s", exc)
            return True

    def _allow_fallback(self, redis_key: str, now_ms: int) -> bool:
        """Pipeline-based variant for servers without Lua scripting."""
        window_start = now_ms - self._window_ms
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zcard(redis_key)
        _, current = pipe.execute()
        if current >= self._max_requests:
            return False
        seq = self._client.incr(f"{redis_key}:seq")
        pipe = self._client.pipeline()
        pipe.pexpire(f"{redis_key}:seq", self._window_ms)
        pipe.zadd(redis_key, {f"{now_ms}:{seq}": now_ms})
        pipe.pexpire(redis_key, self._window_ms)
        pipe.execute()
        return True
