"""API error handling: consistent error envelopes.

Status code mapping:
- ``AdapterUnavailableError`` -> 503 Service Unavailable
- ``NotFoundError`` -> 404 Not Found
- ``ValidationRejectedError`` -> 400 Bad Request
- request body/query validation -> 422 Unprocessable Entity
- ``NotModifiableError`` -> 409 Conflict
- ``PartialWriteFailureError`` -> 502 Bad Gateway
- Any other ``Exception`` -> 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from coquillage.api.models import ErrorDetail, ErrorResponse
from coquillage.errors import ErrorKind, SyncError, sanitize_message

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.adapter_unavailable: 503,
    ErrorKind.not_found: 404,
    ErrorKind.validation_rejected: 400,
    ErrorKind.not_modifiable: 409,
    ErrorKind.partial_write_failure: 502,
}


async def _handle_sync_error(request: Request, exc: SyncError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if exc.kind == ErrorKind.partial_write_failure:
        logger.error("Partial write on %s %s: %s", request.method, request.url.path, exc)
    elif status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc)
    else:
        logger.info("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc)
    body = ErrorResponse(
        error=ErrorDetail(code=exc.kind.value, message=exc.message, details=exc.to_dict())
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_request_validation(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 422 when the request body or query does not parse."""
    errors = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": sanitize_message(str(error.get("msg", "invalid value"))),
        }
        for error in exc.errors()
    ]
    logger.info("Request validation failed on %s %s", request.method, request.url.path)
    message = "; ".join(".".join(e["loc"]) + ": " + e["msg"] for e in errors)
    body = ErrorResponse(
        error=ErrorDetail(
            code=ErrorKind.validation_rejected.value,
            message=sanitize_message(message) or "invalid request",
            details={"errors": errors},
        )
    )
    return JSONResponse(status_code=422, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into a 500 error envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(code="INTERNAL_ERROR", message="Internal server error")
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach the exception handlers and the catch-all middleware to *app*."""
    app.add_exception_handler(SyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
