"""
Fixed-window request quotas for abuse-prone endpoints.

Signed-in callers are counted per user so one shared office or carrier IP
does not starve everyone behind it; anonymous callers are counted per client
address. Counters live in Redis and fall back to process memory when Redis is
unreachable.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Dict, Tuple

import redis.asyncio as redis
from fastapi import Request

from config import settings
from services.errors import RateLimitExceededError
from services.session_token import decode_session_token

logger = logging.getLogger(__name__)

KEY_NAMESPACE = "shortsos:rate"

# bucket key -> (count, window end)
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        try:
            return f"user:{decode_session_token(token.strip())['sub']}"
        except ValueError:
            logger.debug("rate_limit_unverified_token path=%s", request.url.path)

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and forwarded.split(",")[0].strip():
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


def _window_bounds(window_seconds: int, now: float) -> Tuple[int, float]:
    index = int(now // window_seconds)
    return index, float((index + 1) * window_seconds)


async def _consume_local_quota(key: str, window_end: float, now: float) -> int:
    async with _local_lock:
        for stale in [bucket for bucket, (_, ends_at) in _local_counters.items() if ends_at <= now]:
            del _local_counters[stale]
        count, _ = _local_counters.get(key, (0, window_end))
        _local_counters[key] = (count + 1, window_end)
        return count + 1


async def _consume_redis_quota(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            count, _ = await pipe.incr(key).expire(key, window_seconds).execute()
    finally:
        await client.aclose()
    return int(count)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], Awaitable[None]]:
    """Dependency allowing ``limit`` requests per caller in each ``window_seconds`` window."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        now = time.time()
        index, window_end = _window_bounds(window_seconds, now)
        key = f"{KEY_NAMESPACE}:{prefix}:{_client_identifier(request)}:{index}"
        try:
            count = await _consume_redis_quota(key, window_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.warning("rate_limit_redis_unavailable prefix=%s error=%s", prefix, exc)
            count = await _consume_local_quota(key, window_end, now)

        if count > limit:
            retry_after = max(1, math.ceil(window_end - now))
            logger.info("rate_limited prefix=%s count=%s limit=%s", prefix, count, limit)
            raise RateLimitExceededError(f"Rate limit exceeded for {prefix}. Try again later.", retry_after=retry_after)

    return _dependency
