import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from config import settings
from routers.rate_limit import rate_limit
from services.session_token import create_session_token


def _metered_app():
    app = FastAPI()

    @app.get("/metered", dependencies=[Depends(rate_limit("metered", limit=2, window_seconds=60))])
    async def metered():
        return {"ok": True}

    return app


def _bearer(account_id):
    return {"Authorization": f"Bearer {create_session_token(account_id)['token']}"}


@pytest.mark.asyncio
async def test_quota_is_counted_per_account(monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", "redis://127.0.0.1:1/0")
    async with AsyncClient(transport=ASGITransport(app=_metered_app()), base_url="http://test") as client:
        first = await client.get("/metered", headers=_bearer("quota-a"))
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Remaining"] == "1"

        await client.get("/metered", headers=_bearer("quota-a"))
        blocked = await client.get("/metered", headers=_bearer("quota-a"))
        assert blocked.status_code == 429
        assert blocked.headers["Retry-After"] == "60"

        # Another account behind the same address keeps its own window.
        other = await client.get("/metered", headers=_bearer("quota-b"))
        assert other.status_code == 200


@pytest.mark.asyncio
async def test_quota_requires_a_session_token():
    async with AsyncClient(transport=ASGITransport(app=_metered_app()), base_url="http://test") as client:
        resp = await client.get("/metered")
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"
