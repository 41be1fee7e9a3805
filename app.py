"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn. It wires the
allocation core services, registers routers, and runs startup
initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from backend.controllers.allocation_controller import router as allocation_router
from backend.controllers.auth_controller import router as auth_router
from backend.controllers.inventory_controller import router as inventory_router
from backend.controllers.ledger_controller import router as ledger_router
from backend.controllers.request_controller import router as request_router
from backend.repository.data_repository import DataRepository
from backend.services.allocation_service import AllocationEngine
from backend.services.auth_service import AuthService
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import OccupancyLedgerService
from backend.services.matching_service import MatchingService
from backend.services.release_service import ReleaseService
from backend.services.request_service import RequestService
from backend.utils.config import Settings, get_settings
from backend.utils.locking import KeyedLockRegistry
from backend.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service shares one repository and one room-lock registry, so all
    writers in this process serialize per room. Dependencies are exposed on
    app.state for controller resolution.
    """
    settings = settings or get_settings()

    repository = DataRepository(settings)
    locks = KeyedLockRegistry(settings.sqlite_busy_timeout_seconds)

    inventory_service = InventoryService(repository=repository, settings=settings)
    request_service = RequestService(repository=repository, settings=settings)
    ledger_service = OccupancyLedgerService(repository=repository, settings=settings)
    allocation_engine = AllocationEngine(
        repository=repository,
        inventory_service=inventory_service,
        settings=settings,
        locks=locks,
    )
    release_service = ReleaseService(
        repository=repository,
        allocation_engine=allocation_engine,
        inventory_service=inventory_service,
        settings=settings,
    )
    matching_service = MatchingService(
        repository=repository,
        allocation_engine=allocation_engine,
        settings=settings,
    )
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(auth_router)
    app.include_router(allocation_router)
    app.include_router(inventory_router)
    app.include_router(request_router)
    app.include_router(ledger_router)

    app.state.settings = settings
    app.state.repository = repository
    app.state.inventory_service = inventory_service
    app.state.request_service = request_service
    app.state.ledger_service = ledger_service
    app.state.allocation_engine = allocation_engine
    app.state.release_service = release_service
    app.state.matching_service = matching_service
    app.state.auth_service = auth_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    The schema must exist before seeding; the demo requests need the demo
    hostel.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        inventory_service: InventoryService = app.state.inventory_service
        request_service: RequestService = app.state.request_service
        logger.info("Startup: seeding demo inventory (skipped if hostels exist)")
        if inventory_service.seed_demo_inventory_if_empty():
            hostel = inventory_service.snapshot().hostels[0]
            seeded = request_service.seed_demo_requests_if_empty(hostel.hostel_id)
            logger.info("Startup: seeded demo requests | count=%s", seeded)

    report = app.state.ledger_service.reconcile()
    if not report.is_consistent:
        logger.warning(
            "Startup: occupancy counters disagree with the ledger | rooms=%s",
            [item.room_id for item in report.discrepancies],
        )

    logger.info("Startup complete | database=%s", repository.database_path)


# Module-level app object for uvicorn
app = create_app()
