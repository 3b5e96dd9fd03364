"""
Redis-backed usage guard.

Keeps an append-only log of admitted requests per client (a sorted set keyed
by client address, scored by admission time) and admits a request only while
fewer than the ceiling of records fall inside the trailing window.
"""
import os
import time
import uuid
import logging
import functools
from dataclasses import dataclass
from typing import Optional, Callable

import redis
from django.conf import settings
from django.http import JsonResponse

from apps.rag.errors import UpstreamUnavailable
from apps.usage.audit import (
    get_client_ip,
    audit_ratelimit_exceeded,
    audit_usage_admitted,
)

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    retry_after: Optional[int] = None  # seconds to wait if blocked


class UsageStoreUnavailable(UpstreamUnavailable):
    """Raised when the usage log cannot be reached and fail-open is off."""
    pass


def get_redis_client() -> redis.Redis:
    """Get a Redis client from the configured URL."""
    redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
    return redis.from_url(redis_url, decode_responses=True)


def is_rate_limiting_disabled() -> bool:
    """Check if rate limiting is disabled (dev mode only)."""
    return os.getenv('DISABLE_RATE_LIMITING', '').lower() in ('true', '1', 'yes')


# Lua script for atomic sliding window admission.
# Sweep, count and append run as one unit, so two concurrent requests
# from the same client can never both see the same count.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_floor = ARGV[2]
local retention_floor = ARGV[3]
local now = ARGV[4]
local member = ARGV[5]
local retention = tonumber(ARGV[6])
local window = tonumber(ARGV[7])

-- Drop records past the retention period
redis.call('ZREMRANGEBYSCORE', key, '-inf', retention_floor)

-- Admissions still inside the window (window_floor is exclusive)
local current = redis.call('ZCOUNT', key, window_floor, '+inf')

if current >= limit then
    local oldest = redis.call('ZRANGEBYSCORE', key, window_floor, '+inf', 'WITHSCORES', 'LIMIT', 0, 1)
    local retry_after = window
    if oldest[2] then
        retry_after = math.ceil(tonumber(oldest[2]) + window - tonumber(now))
    end
    return {0, limit, 0, retry_after}
end

-- Record the admission
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, retention)

return {1, limit, limit - current - 1, 0}
"""


class RateLimiter:
    """Redis-backed sliding window usage log."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self._redis: Optional[redis.Redis] = client
        self._sliding_window_script = None

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    @staticmethod
    def usage_key(identity: str) -> str:
        return f"usage:{identity}"

    def check_sliding_window(
        self,
        identity: str,
        limit: int,
        window_seconds: int,
        retention_seconds: Optional[int] = None,
        now: Optional[float] = None,
    ) -> RateLimitResult:
        """
        Admit and record a request if the client is under its ceiling.

        Args:
            identity: Client identity (address or the unknown marker)
            limit: Maximum admitted requests per window
            window_seconds: Trailing window size in seconds
            retention_seconds: How long records are kept (>= window)
            now: Evaluation instant as a Unix timestamp (defaults to now)

        Returns:
            RateLimitResult with allow/deny and metadata
        """
        if self._sliding_window_script is None:
            self._sliding_window_script = self.redis.register_script(SLIDING_WINDOW_SCRIPT)

        if now is None:
            now = time.time()
        retention_seconds = max(retention_seconds or window_seconds, window_seconds)

        result = self._sliding_window_script(
            keys=[self.usage_key(identity)],
            args=[
                limit,
                f"({now - window_seconds}",
                now - retention_seconds,
                now,
                f"{now}:{uuid.uuid4().hex}",
                int(retention_seconds),
                int(window_seconds),
            ]
        )

        allowed, limit, remaining, retry_after = (int(value) for value in result)

        return RateLimitResult(
            allowed=bool(allowed),
            limit=limit,
            remaining=remaining,
            retry_after=max(1, retry_after) if not allowed else None
        )


# Singleton instance
_limiter: Optional[RateLimiter] = None


def get_limiter() -> RateLimiter:
    """Get the singleton rate limiter instance."""
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter()
    return _limiter


def check_chat_usage(identity: str) -> RateLimitResult:
    """
    Check and record usage for the chat endpoint.

    Raises:
        UsageStoreUnavailable: Redis is down and USAGE_FAIL_OPEN is off
    """
    if is_rate_limiting_disabled():
        return RateLimitResult(allowed=True, limit=999, remaining=999)

    limit = getattr(settings, 'USAGE_MAX_REQUESTS', 3)
    try:
        limiter = get_limiter()
        return limiter.check_sliding_window(
            identity=identity,
            limit=limit,
            window_seconds=getattr(settings, 'USAGE_WINDOW_SECONDS', 600),
            retention_seconds=getattr(settings, 'USAGE_RETENTION_SECONDS', 86400),
        )
    except redis.RedisError as e:
        logger.error(f"Redis error in usage check: {e}")
        if not getattr(settings, 'USAGE_FAIL_OPEN', True):
            raise UsageStoreUnavailable("Usage store unavailable") from e
        # Fail open - allow request if Redis is down
        return RateLimitResult(allowed=True, limit=limit, remaining=0)


def add_rate_limit_headers(response, result: RateLimitResult):
    """Add standard rate limit headers to a response."""
    response['X-RateLimit-Limit'] = str(result.limit)
    response['X-RateLimit-Remaining'] = str(result.remaining)
    return response


def rate_limit_response(result: RateLimitResult) -> JsonResponse:
    """Generate a 429 rate limit exceeded response."""
    retry_after = result.retry_after or getattr(settings, 'USAGE_WINDOW_SECONDS', 600)
    response = JsonResponse(
        {
            'error': 'Too many requests',
            'code': 'RATE_LIMITED',
            'retryAfter': retry_after
        },
        status=429
    )
    response['Retry-After'] = str(retry_after)
    add_rate_limit_headers(response, result)
    return response


def usage_limited(check_func: Callable[[str], RateLimitResult]):
    """
    Decorator to apply usage limiting to a view.

    The view only runs for admitted requests; a rejected request gets a
    429 and nothing downstream (embedding, retrieval, model) is touched.

    Usage:
        @method_decorator(usage_limited(check_chat_usage), name='post')
        class ChatView(View):
            ...

    Args:
        check_func: Function that takes a client identity and returns RateLimitResult
    """
    def decorator(view_func):
        @functools.wraps(view_func)
        def wrapper(request, *args, **kwargs):
            identity = get_client_ip(request)

            try:
                result = check_func(identity)
            except UpstreamUnavailable as e:
                logger.error(f"Usage check failed for {identity}: {e}")
                return JsonResponse(
                    {'error': 'Service temporarily unavailable', 'code': e.code},
                    status=e.status
                )

            if not result.allowed:
                logger.warning(f"Rate limit exceeded for client {identity}")
                audit_ratelimit_exceeded(
                    request,
                    endpoint=request.path,
                    limit=result.limit,
                    window=getattr(settings, 'USAGE_WINDOW_SECONDS', 600),
                )
                return rate_limit_response(result)

            audit_usage_admitted(request, limit=result.limit, remaining=result.remaining)

            # Call view and add headers to response
            response = view_func(request, *args, **kwargs)
            add_rate_limit_headers(response, result)
            return response

        return wrapper
    return decorator
