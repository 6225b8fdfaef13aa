from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from main import photo_edit_error_handler
from routers.rate_limit import rate_limit
from services.errors import PhotoEditError


def _limited_app(limit):
    limited = FastAPI()
    limited.add_exception_handler(PhotoEditError, photo_edit_error_handler)

    @limited.get("/limited", dependencies=[Depends(rate_limit("limited", limit=limit, window_seconds=60))])
    async def limited_route():
        return {"ok": True}

    return limited


def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_falls_back_to_local_window_without_redis():
    with patch("routers.rate_limit.redis.from_url", side_effect=RedisConnectionError("redis down")):
        async with _client(_limited_app(limit=2)) as client:
            assert (await client.get("/limited")).status_code == 200
            assert (await client.get("/limited")).status_code == 200
            blocked = await client.get("/limited")

    assert blocked.status_code == 429
    assert blocked.json()["code"] == "RATE_LIMITED"
    assert 1 <= int(blocked.headers["Retry-After"]) <= 60


@pytest.mark.asyncio
async def test_clients_are_counted_separately():
    with patch("routers.rate_limit.redis.from_url", side_effect=RedisConnectionError("redis down")):
        async with _client(_limited_app(limit=1)) as client:
            first = await client.get("/limited", headers={"x-forwarded-for": "10.0.0.1"})
            second = await client.get("/limited", headers={"x-forwarded-for": "10.0.0.2"})
            repeat = await client.get("/limited", headers={"x-forwarded-for": "10.0.0.1"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert repeat.status_code == 429


@pytest.mark.asyncio
async def test_uses_redis_counter_and_ttl():
    redis_client = MagicMock()
    redis_client.incr = AsyncMock(return_value=4)
    redis_client.expire = AsyncMock()
    redis_client.ttl = AsyncMock(return_value=42)
    redis_client.aclose = AsyncMock()

    with patch("routers.rate_limit.redis.from_url", return_value=redis_client):
        async with _client(_limited_app(limit=3)) as client:
            response = await client.get("/limited")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "42"
    assert response.json()["retry_after_seconds"] == 42
    redis_client.expire.assert_not_awaited()
    redis_client.aclose.assert_awaited_once()
