from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    title = "Internal Server Error"

    def __init__(self, message: str, *, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AppError):
    status_code = 400
    title = "Validation Error"


class NotFoundError(AppError):
    status_code = 404
    title = "Not Found"


class ProviderVerificationFailed(AppError):
    """Inbound webhook failed its signature or shared-secret check."""

    status_code = 400
    title = "Webhook Verification Failed"

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(AppError):
    """A processor or the LLM could not be reached in time. Retryable."""

    status_code = 503
    title = "Service Temporarily Unavailable"

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider


class ProviderRejected(AppError):
    """The processor understood the request and refused it."""

    status_code = 502
    title = "Payment Error"

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider


class PersistenceError(AppError):
    status_code = 503
    title = "Database Error"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    logger.warning(
        "request_failed",
        error_type=type(exc).__name__,
        message=exc.message,
        method=request.method,
        url=str(request.url),
    )
    body = {"error": exc.title, "message": exc.message, "timestamp": _timestamp()}
    if exc.details is not None:
        body["details"] = jsonable_encoder(exc.details)
    return JSONResponse(status_code=exc.status_code, content=body)


def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation failed",
            "details": jsonable_encoder(exc.errors()),
            "timestamp": _timestamp(),
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
