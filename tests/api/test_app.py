"""Tests for the app factory, index and health endpoints."""

from __future__ import annotations

import httpx
import pytest

from coquillage import __version__
from coquillage.api.app import ENDPOINTS, create_app
from coquillage.testing import FakeCalendarProvider

pytestmark = pytest.mark.unit


async def test_index_lists_endpoints(client: httpx.AsyncClient):
    resp = await client.get("/")

    assert resp.status_code == 200
    assert resp.json() == {
        "service": "coquillage-test",
        "version": __version__,
        "endpoints": ENDPOINTS,
    }


async def test_health_reports_configured_backends(client: httpx.AsyncClient):
    resp = await client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["environment"] == "test"
    assert body["services"] == {"calendar": True, "record_store": True, "payments": False}


async def test_health_with_nothing_configured(make_services, client_for):
    async with client_for(make_services(calendar=None, store=None)) as client:
        resp = await client.get("/health")

    assert resp.json()["services"] == {
        "calendar": False,
        "record_store": False,
        "payments": False,
    }


async def test_cors_preflight(client: httpx.AsyncClient):
    resp = await client.options(
        "/api/appointments",
        headers={
            "Origin": "http://localhost:8080",
            "Access-Control-Request-Method": "POST",
        },
    )

    assert resp.headers["access-control-allow-origin"] == "http://localhost:8080"


async def test_lifespan_installs_injected_services(
    make_services, api_calendar: FakeCalendarProvider
):
    services = make_services()
    app = create_app(services=services)

    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            resp = await client.get("/health")

    assert resp.status_code == 200
    # Injected services belong to the caller and are not shut down.
    assert api_calendar.shutdown_called is False


async def test_trailing_slash_is_not_redirected(client: httpx.AsyncClient):
    resp = await client.get("/api/appointments/")

    assert resp.status_code == 404
