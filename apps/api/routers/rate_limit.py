"""Per-client request quotas backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from services.errors import RateLimitedError

logger = logging.getLogger(__name__)

KEY_PREFIX = "photox:rate"

# key -> (count, window reset in monotonic seconds)
_local_windows: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _redis_window(key: str, window_seconds: int) -> Tuple[int, int]:
    """Count this hit in a fixed Redis window; returns (count, seconds until reset)."""
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        count = int(await client.incr(key))
        if count == 1:
            await client.expire(key, window_seconds)
        ttl = int(await client.ttl(key))
    finally:
        await client.aclose()
    return count, ttl if ttl > 0 else window_seconds


async def _local_window(key: str, window_seconds: int) -> Tuple[int, int]:
    now = time.monotonic()
    async with _local_lock:
        count, reset_at = _local_windows.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        _local_windows[key] = (count, reset_at)
    return count, max(int(reset_at - now), 1)


def rate_limit(scope: str, limit: int, window_seconds: int) -> Callable:
    """FastAPI dependency allowing ``limit`` requests per client per window."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{KEY_PREFIX}:{scope}:{_client_identifier(request)}"
        try:
            count, retry_after = await _redis_window(key, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Redis unavailable for rate limiting, using local window: %s", exc)
            count, retry_after = await _local_window(key, window_seconds)

        if count > limit:
            logger.warning("Rate limit hit: %s (%s/%s)", key, count, limit)
            raise RateLimitedError(scope, retry_after)

    return _dependency
