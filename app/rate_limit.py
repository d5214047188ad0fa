"""Redis-backed sliding-window rate limiter with in-memory fallback."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict, deque

import redis
from fastapi import HTTPException, Request

from app.config import settings

logger = logging.getLogger(__name__)

_REDIS_RETRY_SECONDS = 5
_RATE_LIMIT_KEY_PREFIX = "rate_limit"


class RateLimiter:
    """Per-IP sliding window rate limiter."""

    def __init__(self, max_requests: int, window_seconds: int, max_ips: int = 10_000, name: str | None = None):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_ips = max_ips
        self.name = name or f"limiter-{id(self)}"
        self._requests: OrderedDict[str, deque[float]] = OrderedDict()
        self._lock = threading.Lock()
        self._redis_client: redis.Redis | None = None
        self._redis_retry_after = 0.0

    def _client_ip(self, request: Request) -> str:
        if request.client is None:
            return "unknown"
        return request.client.host

    def _get_redis_client(self) -> redis.Redis | None:
        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            return None
        if self._redis_client is not None:
            return self._redis_client
        now = time.time()
        if now < self._redis_retry_after:
            return None
        try:
            client = redis.Redis.from_url(redis_url)
            client.ping()
            self._redis_client = client
            return client
        except redis.RedisError:
            logger.warning("Rate limiter %s: Redis unavailable, using in-memory window", self.name)
            self._redis_retry_after = now + _REDIS_RETRY_SECONDS
            return None

    def _check_redis(self, ip: str) -> bool | None:
        """Return whether the request is allowed, or None when Redis is unusable."""
        client = self._get_redis_client()
        if client is None:
            return None
        now_ms = int(time.time() * 1000)
        key = f"{_RATE_LIMIT_KEY_PREFIX}:{self.name}:{ip}"
        try:
            pipe = client.pipeline()
            pipe.zremrangebyscore(key, "-inf", now_ms - self.window_seconds * 1000)
            pipe.zadd(key, {f"{now_ms}-{time.time_ns()}": now_ms})
            pipe.zcard(key)
            pipe.expire(key, self.window_seconds)
            _, _, count, _ = pipe.execute()
            return int(count) <= self.max_requests
        except redis.RedisError:
            self._redis_client = None
            self._redis_retry_after = time.time() + _REDIS_RETRY_SECONDS
            return None

    def _check_in_memory(self, ip: str) -> bool:
        now = time.time()
        cutoff = now - self.window_seconds
        with self._lock:
            timestamps = self._requests.setdefault(ip, deque())
            self._requests.move_to_end(ip)
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if len(timestamps) >= self.max_requests:
                return False
            timestamps.append(now)
            while len(self._requests) > self.max_ips:
                self._requests.popitem(last=False)
        return True

    def check(self, request: Request) -> None:
        """Raise 429 if rate limit exceeded."""
        ip = self._client_ip(request)
        allowed = self._check_redis(ip)
        if allowed is None:
            allowed = self._check_in_memory(ip)
        if not allowed:
            raise HTTPException(status_code=429, detail="Too many requests. Please try again later.")

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()


webhook_limiter = RateLimiter(
    max_requests=settings.webhook_rate_limit_per_minute,
    window_seconds=60,
    name="webhook",
)
