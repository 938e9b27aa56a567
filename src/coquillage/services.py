"""Process-level wiring of adapters into the core objects.

Adapters are built once at startup from :class:`ServiceConfig` and injected
into the synchronizer, query engine, reconciler and payment recorder.  A
backend whose credentials are missing or which cannot be reached at startup
is logged and left unconfigured (``None``); requests that need it fail with
``AdapterUnavailableError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import asyncpg

from coquillage.calendar.base import CalendarCredentialError, CalendarProvider
from coquillage.calendar.google import GoogleCalendarProvider
from coquillage.config import ServiceConfig
from coquillage.db import Database
from coquillage.payments import (
    PaymentProvider,
    PaymentProviderUnavailableError,
    PaymentRecorder,
    StripePaymentProvider,
)
from coquillage.query import AppointmentQueryEngine
from coquillage.reconcile import AppointmentReconciler
from coquillage.store.base import RecordStore
from coquillage.store.postgres import PostgresRecordStore
from coquillage.sync import AppointmentSynchronizer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The configured adapters and the core objects built on top of them."""

    config: ServiceConfig
    calendar: CalendarProvider | None
    store: RecordStore | None
    payments: PaymentProvider | None
    database: Database | None = None
    synchronizer: AppointmentSynchronizer = field(init=False)
    query: AppointmentQueryEngine = field(init=False)
    reconciler: AppointmentReconciler = field(init=False)
    recorder: PaymentRecorder = field(init=False)

    def __post_init__(self) -> None:
        calendar_config = self.config.calendar
        self.synchronizer = AppointmentSynchronizer(
            calendar=self.calendar,
            store=self.store,
            calendar_id=calendar_config.calendar_id,
            timezone=calendar_config.timezone,
            default_duration_minutes=calendar_config.default_duration_minutes,
        )
        self.query = AppointmentQueryEngine(store=self.store, timezone=calendar_config.timezone)
        self.reconciler = AppointmentReconciler(
            calendar=self.calendar,
            store=self.store,
            calendar_id=calendar_config.calendar_id,
        )
        self.recorder = PaymentRecorder(provider=self.payments, store=self.store)

    def configured(self) -> dict[str, bool]:
        """Return which backends are configured, keyed by backend name."""
        return {
            "calendar": self.calendar is not None,
            "record_store": self.store is not None,
            "payments": self.payments is not None,
        }

    async def aclose(self) -> None:
        """Shut down every configured adapter."""
        if self.calendar is not None:
            await self.calendar.shutdown()
        if self.payments is not None:
            await self.payments.shutdown()
        if self.store is not None:
            await self.store.close()
        if self.database is not None:
            await self.database.close()


def build_calendar(config: ServiceConfig) -> CalendarProvider | None:
    calendar_config = config.calendar
    try:
        return GoogleCalendarProvider.from_env(
            credentials_env=calendar_config.credentials_env,
            timezone=calendar_config.timezone,
        )
    except CalendarCredentialError as exc:
        logger.warning("Calendar provider not configured: %s", exc)
        return None


def build_payments(config: ServiceConfig) -> PaymentProvider | None:
    try:
        return StripePaymentProvider.from_env(config.payments.secret_key_env)
    except PaymentProviderUnavailableError as exc:
        logger.warning("Payment provider not configured: %s", exc)
        return None


async def build_database(config: ServiceConfig) -> Database | None:
    database = Database.from_env(
        config.db.name,
        min_pool_size=config.db.min_pool_size,
        max_pool_size=config.db.max_pool_size,
    )
    try:
        await database.connect()
    except (OSError, TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
        logger.warning("Record store not configured: cannot connect to database: %s", exc)
        return None
    return database


async def build_services(config: ServiceConfig) -> Services:
    """Build every adapter from *config* and the environment."""
    calendar = build_calendar(config)
    payments = build_payments(config)
    database = await build_database(config)
    store = PostgresRecordStore(database.pool) if database is not None else None
    services = Services(
        config=config,
        calendar=calendar,
        store=store,
        payments=payments,
        database=database,
    )
    logger.info("Services configured: %s", services.configured())
    return services
