"""Sliding window rate limiters guarding the public account endpoints."""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Deque, Final, Protocol

from redis import Redis
from redis.exceptions import RedisError, ResponseError

from ..config import Settings

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def allow(self, scope: str, subject: str) -> bool: ...


class SlidingWindowRateLimiter:
    """Thread-safe in-process limiter keyed by ``scope:subject``."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._hits: defaultdict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def allow(self, scope: str, subject: str) -> bool:
        """Record a hit and return ``True`` while the key is under its limit."""
        now = self._clock()
        horizon = now - self._window
        with self._lock:
            hits = self._hits[f"{scope}:{subject}"]
            while hits and hits[0] <= horizon:
                hits.popleft()
            if len(hits) >= self._max_requests:
                return False
            hits.append(now)
            return True


class RedisSlidingWindowRateLimiter:
    """Limiter shared across replicas, one sorted set per ``scope:subject``.

    The prune, count and add steps run as a single registered Lua script so
    the check and the hit are atomic on the server.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local counter_key = key .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    if redis.call('ZCARD', key) >= max_requests then
        return 0
    end
    local seq = redis.call('INCR', counter_key)
    redis.call('PEXPIRE', counter_key, window_ms)
    redis.call('ZADD', key, now_ms, tostring(now_ms) .. ':' .. tostring(seq))
    redis.call('PEXPIRE', key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "accounts:rate",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def allow(self, scope: str, subject: str) -> bool:
        """Return ``True`` when ``scope:subject`` is still within the shared limit."""
        key = f"{self._key_prefix}:{scope}:{subject}"
        now_ms = int(time.time() * 1000)
        try:
            result = self._script(keys=[key], args=[self._window_ms, self._max_requests, now_ms])
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                return self._allow_without_lua(key, now_ms)
            raise
        return int(result) == 1

    def _allow_without_lua(self, key: str, now_ms: int) -> bool:
        """Same steps as the Lua script, for servers that do not support EVAL."""
        self._client.zremrangebyscore(key, 0, now_ms - self._window_ms)
        if self._client.zcard(key) >= self._max_requests:
            return False
        seq = self._client.incr(f"{key}:seq")
        self._client.pexpire(f"{key}:seq", self._window_ms)
        self._client.zadd(key, {f"{now_ms}:{seq}": now_ms})
        self._client.pexpire(key, self._window_ms)
        return True


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Instantiate the configured limiter backend, preferring Redis when reachable."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        client = Redis.from_url(settings.redis_url)
        try:
            client.ping()
        except RedisError as exc:
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)
        else:
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
