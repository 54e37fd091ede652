"""
Tests for the in-memory rate limiter.
"""
import httpx
import pytest
from fastapi import FastAPI

from app.core.middleware import RateLimitMiddleware


def limiter(**kwargs):
    return RateLimitMiddleware(FastAPI(), **kwargs)


class TestRateLimitWindow:

    def test_limit_is_enforced_inside_the_window(self):
        rl = limiter(limit_per_minute=2)
        key = ("10.0.0.1", "*")

        assert rl._hit(key, 2, now=1000.0) is True
        assert rl._hit(key, 2, now=1010.0) is True
        assert rl._hit(key, 2, now=1020.0) is False
        # First hit has left the window
        assert rl._hit(key, 2, now=1061.0) is True

    def test_path_limits_use_their_own_bucket(self):
        rl = limiter(limit_per_minute=100, path_limits={"/kyc/providers/": 5})

        assert rl._limit_for("/api/v1/kyc/providers/sumsub/session") == ("/kyc/providers/", 5)
        assert rl._limit_for("/api/v1/kyc/me") == ("*", 100)

    def test_idle_keys_are_swept(self):
        rl = limiter(limit_per_minute=2)
        rl._hit(("10.0.0.1", "*"), 2, now=1000.0)
        rl._hit(("10.0.0.2", "*"), 2, now=1050.0)

        rl._sweep(now=1061.0)

        assert ("10.0.0.1", "*") not in rl.requests
        assert ("10.0.0.2", "*") in rl.requests

        rl._sweep(now=1200.0)
        assert rl.requests == {}

    def test_sweep_runs_at_most_once_per_window(self):
        rl = limiter(limit_per_minute=2)
        rl._sweep(now=1000.0)
        rl._hit(("10.0.0.1", "*"), 2, now=1000.0)

        rl._sweep(now=1030.0)
        rl.requests[("10.0.0.3", "*")] = []
        rl._sweep(now=1059.0)

        assert ("10.0.0.3", "*") in rl.requests


class TestRateLimitHttp:

    @pytest.mark.asyncio
    async def test_over_limit_is_429(self):
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, limit_per_minute=2)

        @app.get("/ping")
        async def ping():
            return {"ok": True}

        transport = httpx.ASGITransport(app=app, client=("10.9.9.9", 50000))
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            codes = [(await ac.get("/ping")).status_code for _ in range(3)]

        assert codes == [200, 200, 429]
