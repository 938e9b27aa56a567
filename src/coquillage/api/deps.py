"""FastAPI dependencies.

The lifespan handler installs the process-wide :class:`Services` with
:func:`init_services`; tests override :func:`get_services` through
``app.dependency_overrides`` instead.
"""

from __future__ import annotations

from fastapi import Depends

from coquillage.payments import PaymentRecorder
from coquillage.query import AppointmentQueryEngine
from coquillage.services import Services
from coquillage.sync import AppointmentSynchronizer

_services: Services | None = None


def init_services(services: Services) -> None:
    global _services  # noqa: PLW0603
    _services = services


def shutdown_services() -> None:
    global _services  # noqa: PLW0603
    _services = None


def get_services() -> Services:
    """Return the active services.

    Raises ``RuntimeError`` when called before the app lifespan started.
    """
    if _services is None:
        raise RuntimeError("Services not initialized")
    return _services


def get_synchronizer(services: Services = Depends(get_services)) -> AppointmentSynchronizer:
    return services.synchronizer


def get_query_engine(services: Services = Depends(get_services)) -> AppointmentQueryEngine:
    return services.query


def get_payment_recorder(services: Services = Depends(get_services)) -> PaymentRecorder:
    return services.recorder
