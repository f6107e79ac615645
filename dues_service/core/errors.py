import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DuesServiceError(Exception):
    """Base class for errors surfaced to callers of the dues core."""

    status_code = 400
    code = "dues_error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


class NotFoundError(DuesServiceError):
    status_code = 404
    code = "not_found"


class InvalidResidentError(DuesServiceError):
    status_code = 422
    code = "invalid_resident"


class ConflictError(DuesServiceError):
    status_code = 409
    code = "conflict"


class AlreadyPaidError(ConflictError):
    code = "already_paid"


class InvalidStateError(DuesServiceError):
    status_code = 409
    code = "invalid_state"


class PaymentNotCompletedError(InvalidStateError):
    code = "payment_not_completed"


class UpstreamUnavailableError(DuesServiceError):
    status_code = 503
    code = "upstream_unavailable"

    def __init__(self, message: str, *, upstream: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, context=context)
        self.upstream = upstream


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DuesServiceError)
    async def dues_error_handler(request: Request, exc: DuesServiceError) -> JSONResponse:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "detail": exc.message,
            "code": exc.code,
            "path": str(request.url),
        }
        if isinstance(exc, UpstreamUnavailableError):
            payload["upstream"] = exc.upstream
            payload["retryable"] = True
        if exc.context:
            payload["context"] = exc.context
        return JSONResponse(status_code=exc.status_code, content=payload)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation failed.",
                "errors": jsonable_encoder(exc.errors()),
                "path": str(request.url),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore[override]
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error.",
                "path": str(request.url),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload: Dict[str, Any] = {"detail": exc.detail or "HTTP error.", "path": str(request.url)}
        if exc.headers:
            payload["headers"] = exc.headers
        return JSONResponse(status_code=exc.status_code, content=payload)
