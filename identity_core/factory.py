"""Wiring helpers that assemble the lifecycle manager from settings."""

from __future__ import annotations

import logging
from datetime import timedelta

from redis import Redis
from redis.exceptions import RedisError

from .collaborators import BoundedCaller
from .config import Settings, get_settings
from .domain.lockout import LockoutPolicy
from .domain.ports import EventSink, Notifier, SigningKey, SigningKeySource, UserStore
from .domain.service import AccountLifecycleManager
from .security.codes import OneTimeCodeEngine
from .security.passwords import CredentialHasher
from .security.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from .security.redis_rate_limiter import RedisSlidingWindowRateLimiter
from .security.tokens import KeyRing, TokenIssuer

logger = logging.getLogger(__name__)


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Return the Redis limiter when configured and reachable, else the in-memory one."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            client = Redis.from_url(settings.redis_url)
            client.ping()
        except RedisError as exc:
            logger.warning("redis unavailable for rate limiting, using in-memory limiter: %s", exc)
        else:
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
    return SlidingWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)


def build_hasher(settings: Settings) -> CredentialHasher:
    return CredentialHasher(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
        hash_len=settings.argon2_hash_len,
        salt_len=settings.argon2_salt_len,
        max_concurrent=settings.hash_max_concurrency,
    )


def build_lifecycle_manager(
    store: UserStore,
    notifier: Notifier,
    event_sink: EventSink,
    *,
    settings: Settings | None = None,
    key_source: SigningKeySource | None = None,
    rate_limiter: RateLimiter | None = None,
) -> AccountLifecycleManager:
    """Assemble an :class:`AccountLifecycleManager` from ``settings``.

    Adapters (store, notifier, event sink) are supplied by the caller; the
    signing key ring and rate limiter default to ones derived from settings.
    """
    settings = settings or get_settings()
    keys = key_source or KeyRing(SigningKey(key_id=settings.jwt_key_id, secret=settings.jwt_secret))
    tokens = TokenIssuer(
        keys,
        issuer=settings.jwt_issuer,
        access_ttl=timedelta(seconds=settings.jwt_ttl_seconds),
        refresh_ttl=timedelta(seconds=settings.refresh_ttl_seconds),
        max_refresh_tokens=settings.refresh_token_cap,
    )
    codes = OneTimeCodeEngine(
        settings.otp_secret,
        ttl=timedelta(seconds=settings.otp_ttl_seconds),
        max_attempts=settings.otp_max_attempts,
    )
    lockout = LockoutPolicy(
        threshold=settings.lockout_threshold,
        base=timedelta(seconds=settings.lockout_base_seconds),
        cap=timedelta(seconds=settings.lockout_max_seconds),
    )
    return AccountLifecycleManager(
        store,
        notifier,
        event_sink,
        hasher=build_hasher(settings),
        codes=codes,
        tokens=tokens,
        lockout=lockout,
        settings=settings,
        rate_limiter=rate_limiter or build_rate_limiter(settings),
        caller=BoundedCaller(settings.collaborator_workers),
    )
