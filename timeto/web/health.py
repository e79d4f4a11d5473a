"""Health check endpoint logic."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from timeto.exceptions import TransientStoreError
from timeto.storage.collections import user_path

if TYPE_CHECKING:
    from timeto.web.dependencies import TenancyServices

logger = structlog.get_logger(__name__)


async def check_health(services: TenancyServices) -> dict[str, object]:
    """Return application health with a document store round trip."""
    result: dict[str, object] = {
        "status": "healthy",
        "version": "0.1.0",
        "auth_mode": services.settings.auth_mode,
        "store": "sql" if services.settings.use_database else "memory",
        "database": "connected",
    }
    try:
        await services.store.get(user_path("health-check"))
    except TransientStoreError as exc:
        logger.warning("health_check_store_failed", error=str(exc))
        result["database"] = "unavailable"
        result["status"] = "degraded"
    return result
