"""
Sliding-window rate limiting.

Persist calls fire on every local state change of a conversation, so chat
writes get their own, tighter budget. Counters live in process memory unless
Redis is configured.
"""
import asyncio
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Union

from fastapi import Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from redis.exceptions import RedisError
from slowapi.util import get_remote_address

from app.core.errors import ErrorCodes
from app.core.logging import security_logger

EXEMPT_PATHS = frozenset({"/", "/health", "/metrics", "/docs", "/redoc", "/openapi.json"})
WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class RateLimit:
    requests: int
    window: int  # seconds


CHAT_WRITE_LIMIT = RateLimit(requests=120, window=60)
DEFAULT_LIMIT = RateLimit(requests=300, window=60)


class InMemoryRateLimiter:
    def __init__(self):
        self.hits: Dict[str, Deque[float]] = defaultdict(deque)
        self.lock = asyncio.Lock()

    async def is_allowed(self, key: str, rule: RateLimit) -> bool:
        async with self.lock:
            now = time.time()
            hits = self.hits[key]
            while hits and hits[0] <= now - rule.window:
                hits.popleft()
            if len(hits) >= rule.requests:
                return False
            hits.append(now)
            return True


class RedisRateLimiter:
    """Shared counters for multi-worker deployments; fails open if Redis is down"""

    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    async def is_allowed(self, key: str, rule: RateLimit) -> bool:
        now = time.time()
        redis_key = f"ratelimit:{key}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(redis_key, 0, now - rule.window)
                pipe.zcard(redis_key)
                pipe.zadd(redis_key, {str(now): now})
                pipe.expire(redis_key, rule.window)
                _, current, _, _ = await pipe.execute()
        except RedisError as e:
            security_logger.error("Redis rate limiter error", error=str(e))
            return True
        return current < rule.requests


_limiter: Union[InMemoryRateLimiter, RedisRateLimiter] = InMemoryRateLimiter()


def get_active_rate_limiter() -> Union[InMemoryRateLimiter, RedisRateLimiter]:
    return _limiter


async def setup_redis_rate_limiter(redis_url: str) -> bool:
    """Switch to Redis-backed counters; keeps the in-memory limiter if Redis is unreachable"""
    global _limiter
    client = Redis.from_url(redis_url)
    try:
        await client.ping()
    except RedisError as e:
        security_logger.warning("Redis unavailable, rate limiting in memory", error=str(e))
        return False
    _limiter = RedisRateLimiter(client)
    security_logger.info("Redis rate limiter initialized")
    return True


def rate_limit_key_func(request: Request) -> str:
    """Key by bearer token when present, else by client address"""
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        # The token tail separates callers without putting the token in Redis keys
        return f"token:{authorization[-16:]}"
    return get_remote_address(request)


def limit_for(path: str, method: str) -> Optional[RateLimit]:
    """The budget that applies to a request, or None if it is exempt"""
    if path in EXEMPT_PATHS:
        return None
    if path.startswith("/api/chat") and method in WRITE_METHODS:
        return CHAT_WRITE_LIMIT
    return DEFAULT_LIMIT


async def rate_limit_middleware(request: Request, call_next: Callable):
    rule = limit_for(request.url.path, request.method)
    if rule is None:
        return await call_next(request)

    client_key = rate_limit_key_func(request)
    if await get_active_rate_limiter().is_allowed(f"{client_key}:{request.url.path}", rule):
        return await call_next(request)

    security_logger.warning(
        "Rate limit exceeded", client=client_key, path=request.url.path, method=request.method
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": f"Rate limit exceeded. Maximum {rule.requests} requests per {rule.window} seconds.",
            "code": ErrorCodes.RATE_LIMIT_ERROR,
        },
        headers={"Retry-After": str(rule.window)},
    )
