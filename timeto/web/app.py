"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import Depends, FastAPI

from timeto.config.logging import setup_logging
from timeto.config.settings import get_settings
from timeto.storage.bounded import create_document_store, create_kv_store
from timeto.web.dependencies import TenancyServices, get_services
from timeto.web.errors import register_exception_handlers
from timeto.web.middleware import RequestIDMiddleware
from timeto.web.routes.events import router as events_router
from timeto.web.routes.members import router as members_router
from timeto.web.routes.organizations import router as organizations_router
from timeto.web.routes.session import router as session_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from timeto.config.settings import Settings

logger = structlog.get_logger(__name__)


def create_app(
    settings: Settings | None = None, services: TenancyServices | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    setup_logging(log_level=settings.log_level, json_output=not settings.debug)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if settings.use_database:
            from timeto.storage.database import init_db

            await init_db()
        yield

    app = FastAPI(
        title="TimeTo",
        description="Multi-tenant organizations, membership and event reminders",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services or TenancyServices(
        create_document_store(settings), create_kv_store(settings), settings
    )

    register_exception_handlers(app)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/api/health")
    async def health_check(
        tenancy: TenancyServices = Depends(get_services),
    ) -> dict[str, object]:
        from timeto.web.health import check_health

        return await check_health(tenancy)

    for router in (session_router, organizations_router, members_router, events_router):
        app.include_router(router)

    logger.info("app_created", auth_mode=settings.auth_mode, use_database=settings.use_database)
    return app
