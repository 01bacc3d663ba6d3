"""
Global error handling middleware.

WHAT: Map chat and bargain exceptions to HTTP responses
WHY: Clients branch on status code and the `error` field of one body shape
HOW: FastAPI exception handlers sharing a status table and body builder
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..utils.exceptions import (
    APIException,
    AuthenticationError,
    AuthorizationError,
    BargainTransitionError,
    MessageNotFoundError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Most specific first; anything else is a 400
STATUS_BY_EXCEPTION = (
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (MessageNotFoundError, status.HTTP_404_NOT_FOUND),
    (BargainTransitionError, status.HTTP_409_CONFLICT),
)


def status_for(exc: APIException) -> int:
    for exc_type, status_code in STATUS_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def error_body(code: str, message: str, details: Optional[Any] = None) -> dict:
    """Error body shared by every handler: {error, message, details, timestamp}."""
    return {
        "error": code,
        "message": message,
        "details": details if details is not None else {},
        "timestamp": datetime.now().isoformat()
    }


def _clean_validation_errors(errors: list) -> list:
    cleaned = []
    for error in errors:
        item = {key: error.get(key) for key in ("type", "loc", "msg", "input")}
        # ctx may hold exception instances
        if "ctx" in error:
            item["ctx"] = {
                k: str(v) if isinstance(v, Exception) else v
                for k, v in error["ctx"].items()
            }
        cleaned.append(item)
    return cleaned


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle malformed request bodies and query parameters.

    Returns 400 VALIDATION_ERROR with per-field errors, the same code a
    message with neither text nor attachments gets from the service.
    """
    errors = _clean_validation_errors(exc.errors())
    logger.warning(f"Request validation failed on {request.url.path}: {errors}")

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("VALIDATION_ERROR", "Request validation failed", errors)
    )


async def api_exception_handler(request: Request, exc: APIException):
    """Handle domain exceptions using the status table."""
    status_code = status_for(exc)
    logger.warning(f"API exception ({status_code}): {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content=error_body(exc.code, exc.message, exc.details)
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Last-resort handler.

    Logs the traceback and returns 500 INTERNAL_ERROR without leaking
    exception text to the client.
    """
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("INTERNAL_ERROR", "Internal server error")
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.info("Exception handlers registered")
