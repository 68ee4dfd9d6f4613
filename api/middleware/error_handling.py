from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from core.logging import get_api_logger_safe
from core.utils.exceptions import (
    AccountNotFoundError,
    ChannelAuthError,
    ChannelNotFoundError,
    CopyTraderException,
    InvalidStatusTransitionError,
    InvalidSubscriptionTransitionError,
    NotChannelOwnerError,
    PayloadValidationError,
    SubscriptionNotFoundError,
    SubscriptionRejectedError,
)
from datetime import datetime, timezone

logger = get_api_logger_safe("api.middleware.error_handling")

# Domain error -> HTTP status; first match wins
_STATUS_BY_ERROR = (
    (PayloadValidationError, 400),
    (ChannelAuthError, 403),
    (SubscriptionRejectedError, 403),
    (NotChannelOwnerError, 403),
    (AccountNotFoundError, 404),
    (ChannelNotFoundError, 404),
    (SubscriptionNotFoundError, 404),
    (InvalidStatusTransitionError, 409),
    (InvalidSubscriptionTransitionError, 409),
)


def status_for(error: CopyTraderException) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 500


def error_body(error: str, **extra) -> dict:
    return {"ok": False, "error": error, **extra}


async def _domain_error_handler(request: Request, exc: CopyTraderException) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("Unmapped domain error", path=request.url.path, method=request.method,
                     error=exc.message, error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content=error_body("Internal server error"))

    if isinstance(exc, SubscriptionRejectedError):
        # The trading plugin branches on this exact reason string
        body = error_body(exc.reason)
    elif isinstance(exc, PayloadValidationError):
        body = error_body(exc.message, details=jsonable_encoder(exc.errors))
    else:
        body = error_body(exc.message)

    logger.info("Request refused", path=request.url.path, method=request.method,
                status_code=status_code, error_type=type(exc).__name__)
    return JSONResponse(status_code=status_code, content=body)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=error_body("Invalid request", details=jsonable_encoder(exc.errors())),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to HTTP statuses with an ``{"ok": false, "error": ...}`` body."""
    app.add_exception_handler(CopyTraderException, _domain_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Global error handling middleware"""

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except Exception as e:
            # Log the error
            logger.error(
                "Unhandled API exception",
                path=request.url.path,
                method=request.method,
                error=str(e),
                exc_info=True
            )

            # Return a structured error response
            return JSONResponse(
                status_code=500,
                content=error_body(
                    "Internal server error",
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    path=request.url.path,
                )
            )
