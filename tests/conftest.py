"""Shared fixtures for the coquillage test suite.

- In-memory adapters (``coquillage.testing``) and the core objects wired to
  them, for unit tests.
- A session-scoped PostgreSQL testcontainer plus a per-test migrated
  database, for integration tests.  Skipped when Docker is unavailable.
"""

from __future__ import annotations

import datetime as dt
import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

from coquillage.query import AppointmentQueryEngine
from coquillage.reconcile import AppointmentReconciler
from coquillage.sync import AppointmentSynchronizer
from coquillage.testing import FakeCalendarProvider, InMemoryRecordStore

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from coquillage.db import Database

docker_available = shutil.which("docker") is not None

# Wednesday 2026-10-14 09:00 UTC
FIXED_NOW = dt.datetime(2026, 10, 14, 9, 0, tzinfo=dt.UTC)


class FrozenClock:
    """Monotonic fake clock: each call advances by one second."""

    def __init__(self, start: dt.datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        current = self.now
        self.now = current + dt.timedelta(seconds=1)
        return current


# ---------------------------------------------------------------------------
# In-memory adapters
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(clock: FrozenClock) -> InMemoryRecordStore:
    return InMemoryRecordStore(clock=clock)


@pytest.fixture
def calendar() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def synchronizer(
    calendar: FakeCalendarProvider, store: InMemoryRecordStore
) -> AppointmentSynchronizer:
    return AppointmentSynchronizer(calendar=calendar, store=store, default_duration_minutes=30)


@pytest.fixture
def query_engine(store: InMemoryRecordStore) -> AppointmentQueryEngine:
    return AppointmentQueryEngine(store=store, clock=lambda: FIXED_NOW)


@pytest.fixture
def reconciler(
    calendar: FakeCalendarProvider, store: InMemoryRecordStore
) -> AppointmentReconciler:
    return AppointmentReconciler(calendar=calendar, store=store)


@pytest.fixture
def appointment_details() -> dict:
    return {
        "patient_name": "Ada Lovelace",
        "patient_email": "ada@example.com",
        "patient_phone": "+1 555 0100",
        "date": "2026-10-20",
        "time": "14:30",
        "type": "consultation",
        "notes": "First visit",
    }


# ---------------------------------------------------------------------------
# PostgreSQL testcontainer
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_database`` call creates a database with a random name,
    so rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh, migrated database with an open pool for a single test.

    Tests should use this as::

        async with provisioned_database() as db:
            store = PostgresRecordStore(db.pool)
    """
    from coquillage.db import Database
    from coquillage.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        migrate: bool = True,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Database]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        if migrate:
            await run_migrations(db.sqlalchemy_url())
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
