"""Health, metrics and the request middleware."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from app.middleware import SecurityHeadersMiddleware
from app.utils.log_mask import mask_email, mask_sensitive_fields
from tests.conftest import auth_for


def _mock_session(execute=None) -> AsyncMock:
    session = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    session.execute = execute or AsyncMock()
    return session


@pytest.mark.asyncio
async def test_health_ok(client: AsyncClient):
    mock_scheduler = MagicMock()
    mock_scheduler.running = True

    with (
        patch("app.main.async_session", return_value=_mock_session()),
        patch("app.main.scheduler", mock_scheduler),
    ):
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "database": "connected",
        "redis": "not_configured",
        "scheduler": "running",
    }


@pytest.mark.asyncio
async def test_health_scheduler_stopped(client: AsyncClient):
    mock_scheduler = MagicMock()
    mock_scheduler.running = False

    with (
        patch("app.main.async_session", return_value=_mock_session()),
        patch("app.main.scheduler", mock_scheduler),
    ):
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["scheduler"] == "stopped"


@pytest.mark.asyncio
async def test_health_database_down(client: AsyncClient):
    failing = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("down")))
    with patch("app.main.async_session", return_value=_mock_session(failing)):
        response = await client.get("/health")

    assert response.status_code == 503
    assert response.json()["database"] == "disconnected"


@pytest.mark.asyncio
async def test_metrics_exposed_in_development(client: AsyncClient):
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "servly_" in response.text


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _plain_app(is_production: bool) -> Starlette:
    async def homepage(request: Request):
        return PlainTextResponse("OK")

    app = Starlette(routes=[Route("/", homepage), Route("/bookings", homepage)])
    app.add_middleware(SecurityHeadersMiddleware, is_production=is_production)
    return app


@pytest.mark.asyncio
async def test_security_headers_in_production():
    transport = ASGITransport(app=_plain_app(is_production=True))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Referrer-Policy"] == "no-referrer"
    assert "max-age=31536000" in response.headers["Strict-Transport-Security"]
    assert "Cache-Control" not in response.headers


@pytest.mark.asyncio
async def test_security_headers_no_hsts_in_dev():
    transport = ASGITransport(app=_plain_app(is_production=False))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/bookings")

    assert "Strict-Transport-Security" not in response.headers
    assert "Content-Security-Policy" in response.headers
    assert response.headers["Cache-Control"] == "no-store"


@pytest.mark.asyncio
async def test_request_id_echoed(client: AsyncClient, customer_user):
    response = await client.get(
        "/bookings/me", headers={**auth_for(customer_user.id), "X-Request-ID": "abc-123"}
    )
    assert response.headers["X-Request-ID"] == "abc-123"
    assert response.headers["X-Process-Time"].endswith("ms")
    assert response.headers["Cache-Control"] == "no-store"


@pytest.mark.asyncio
async def test_unsafe_request_id_replaced(client: AsyncClient, customer_user):
    response = await client.get(
        "/bookings/me", headers={**auth_for(customer_user.id), "X-Request-ID": "bad id;forged=1"}
    )
    assert response.headers["X-Request-ID"] != "bad id;forged=1"
    assert len(response.headers["X-Request-ID"]) == 36


# ---------------------------------------------------------------------------
# Log masking
# ---------------------------------------------------------------------------


def test_mask_email():
    assert mask_email("jane@example.com") == "j***@example.com"
    assert mask_email("not-an-email") == "***"
    assert mask_email(None) == "***"


def test_mask_sensitive_fields():
    event = {
        "event": "payment_intent_created",
        "client_secret": "pi_123_secret_456",
        "email": "jane@example.com",
        "amount": 10_000,
    }
    masked = mask_sensitive_fields(None, "info", event)
    assert masked["client_secret"] == "[redacted]"
    assert masked["email"] == "j***@example.com"
    assert masked["amount"] == 10_000
