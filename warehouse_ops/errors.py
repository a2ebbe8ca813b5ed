"""Error taxonomy shared by routes, services and the dashboard.

Validation errors are raised before any database work. Backend errors wrap
database failures with an opaque message; the original exception is logged
where it is caught and never echoed to the caller.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class WarehouseError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(WarehouseError):
    status_code = 400


class PermissionDenied(WarehouseError):
    status_code = 403

    def __init__(self, message: str = "permission denied") -> None:
        super().__init__(message)


class NotFoundError(WarehouseError):
    status_code = 404


class BackendError(WarehouseError):
    status_code = 502


async def _warehouse_error_handler(request: Request, exc: WarehouseError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WarehouseError, _warehouse_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
