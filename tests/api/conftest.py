"""Shared fixtures for API tests.

The app is built around in-memory adapters and ``get_services`` is
overridden, so no lifespan, database or network is involved.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import httpx
import pytest
from fastapi import FastAPI

from coquillage.api.app import create_app
from coquillage.api.deps import get_services
from coquillage.config import CalendarConfig, ServiceConfig
from coquillage.payments import PaymentProvider
from coquillage.services import Services
from coquillage.testing import FakeCalendarProvider, InMemoryRecordStore


@pytest.fixture
def api_calendar() -> FakeCalendarProvider:
    return FakeCalendarProvider(timezone="America/New_York")


@pytest.fixture
def api_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def make_services(
    api_calendar: FakeCalendarProvider, api_store: InMemoryRecordStore
) -> Callable[..., Services]:
    def _make(
        *,
        calendar: FakeCalendarProvider | None = api_calendar,
        store: InMemoryRecordStore | None = api_store,
        payments: PaymentProvider | None = None,
    ) -> Services:
        config = ServiceConfig(
            name="coquillage-test",
            environment="test",
            calendar=CalendarConfig(timezone="America/New_York"),
        )
        return Services(config=config, calendar=calendar, store=store, payments=payments)

    return _make


def _app_for(services: Services) -> FastAPI:
    app = create_app(services=services)
    app.dependency_overrides[get_services] = lambda: services
    return app


@pytest.fixture
def client_for() -> Callable[[Services], httpx.AsyncClient]:
    """Return a factory for clients bound to an app serving *services*."""

    def _client(services: Services) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=_app_for(services)), base_url="http://test"
        )

    return _client


@pytest.fixture
async def client(
    make_services: Callable[..., Services],
    client_for: Callable[[Services], httpx.AsyncClient],
) -> AsyncIterator[httpx.AsyncClient]:
    async with client_for(make_services()) as client:
        yield client


@pytest.fixture
def appointment_body() -> dict:
    return {
        "patient_name": "Ada Lovelace",
        "patient_email": "ada@example.com",
        "patient_phone": "+1 555 0100",
        "date": "2026-10-20",
        "time": "14:30",
        "type": "consultation",
        "notes": "First visit",
    }
