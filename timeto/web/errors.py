"""Map the exception hierarchy onto HTTP responses."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi.responses import JSONResponse

from timeto.exceptions import (
    AuthenticationRequired,
    AuthorizationDenied,
    CreationInProgress,
    NotFound,
    TimetoError,
    TransientStoreError,
    ValidationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request

logger = structlog.get_logger(__name__)

STATUS_CODES: dict[type[TimetoError], int] = {
    AuthenticationRequired: 401,
    AuthorizationDenied: 403,
    NotFound: 404,
    ValidationError: 422,
    CreationInProgress: 409,
    TransientStoreError: 503,
}


def status_for(exc: TimetoError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


async def timeto_error_handler(request: Request, exc: TimetoError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        status=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    headers = {"Retry-After": "1"} if status_code in (409, 503) else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "category": exc.category.value},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TimetoError, timeto_error_handler)  # type: ignore[arg-type]
