"""FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (origins from ``[api].cors_origins``)
- a lifespan handler that builds the adapters at startup and shuts them
  down on exit
- ``GET /`` (endpoint index) and ``GET /health``
- the appointment, consultation and payment routers
"""

from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coquillage import __version__
from coquillage.api.deps import get_services, init_services, shutdown_services
from coquillage.api.middleware import register_error_handlers
from coquillage.api.models import HealthResponse, ServicesStatus
from coquillage.api.routers.appointments import router as appointments_router
from coquillage.api.routers.consultations import router as consultations_router
from coquillage.api.routers.payments import router as payments_router
from coquillage.config import ServiceConfig
from coquillage.services import Services, build_services

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "health": "GET /health",
    "appointments": "GET|POST /api/appointments",
    "appointment": "PATCH|DELETE /api/appointments/{external_event_id}",
    "statistics": "GET /api/appointments/statistics",
    "consultations": "GET|POST /api/consultations",
    "payments": "POST /api/payments/confirm",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the services on startup unless they were injected, close them on exit."""
    services: Services | None = app.state.services
    owned = services is None
    if services is None:
        services = await build_services(app.state.config)
    init_services(services)
    try:
        yield
    finally:
        shutdown_services()
        if owned:
            await services.aclose()


def create_app(
    config: ServiceConfig | None = None,
    services: Services | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Parsed service configuration.  Defaults to ``services.config`` or
        to an all-defaults configuration.
    services:
        Pre-built services.  When omitted they are built from *config*
        in the lifespan handler and closed on shutdown.
    cors_origins:
        Allowed CORS origins.  Defaults to ``config.api.cors_origins``.
    """
    if config is None:
        config = services.config if services is not None else ServiceConfig(name="coquillage")
    if cors_origins is None:
        cors_origins = config.api.cors_origins

    app = FastAPI(
        title="Coquillage Appointment API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(appointments_router)
    app.include_router(consultations_router)
    app.include_router(payments_router)

    @app.get("/")
    async def index():
        return {
            "service": config.name,
            "version": __version__,
            "endpoints": ENDPOINTS,
        }

    @app.get("/health", response_model=HealthResponse)
    async def health(current: Services = Depends(get_services)) -> HealthResponse:
        return HealthResponse(
            status="ok",
            timestamp=dt.datetime.now(dt.UTC),
            environment=current.config.environment,
            services=ServicesStatus(**current.configured()),
        )

    return app
