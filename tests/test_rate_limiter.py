"""Test suite for per-caller rate limiting."""

import pytest
from jose import jwt

from conftest import auth_headers
from docchat.api.app import app
from docchat.api.rate_limiter import RateLimiter, RateLimitExceeded


@pytest.mark.asyncio
async def test_limit_is_enforced_per_key():
    limiter = RateLimiter(rate_limit=2, time_window=60)

    await limiter.check_rate_limit("user:a")
    await limiter.check_rate_limit("user:a")
    with pytest.raises(RateLimitExceeded) as excinfo:
        await limiter.check_rate_limit("user:a")

    assert 1 <= excinfo.value.retry_after <= 60
    await limiter.check_rate_limit("user:b")
    assert await limiter.get_remaining_requests("user:a") == 0
    assert await limiter.get_remaining_requests("user:b") == 1


@pytest.mark.asyncio
async def test_window_expiry_frees_capacity(monkeypatch):
    limiter = RateLimiter(rate_limit=1, time_window=10)
    now = [1000.0]
    monkeypatch.setattr("docchat.api.rate_limiter.time.time", lambda: now[0])

    await limiter.check_rate_limit("user:a")
    with pytest.raises(RateLimitExceeded):
        await limiter.check_rate_limit("user:a")

    now[0] += 11
    await limiter.check_rate_limit("user:a")
    assert await limiter.get_remaining_requests("user:a") == 0


@pytest.mark.asyncio
async def test_api_answers_429_with_retry_after(client):
    app.state.rate_limiter = RateLimiter(rate_limit=2, time_window=60)

    for _ in range(2):
        response = await client.get("/conversations", headers=auth_headers())
        assert response.status_code == 200

    response = await client.get("/conversations", headers=auth_headers())
    assert response.status_code == 429
    assert "Retry-After" in response.headers

    other = await client.get("/conversations", headers=auth_headers("someone-else"))
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_forged_token_does_not_spend_the_subjects_budget(client):
    app.state.rate_limiter = RateLimiter(rate_limit=2, time_window=60)
    forged = jwt.encode({"sub": "user-1"}, "not-the-server-secret", algorithm="HS256")

    for _ in range(2):
        response = await client.get("/me", headers={"Authorization": f"Bearer {forged}"})
        assert response.status_code == 401

    response = await client.get("/me", headers=auth_headers("user-1"))
    assert response.status_code == 200
