"""
Standardized API Response Module

Provides consistent response formatting across all API endpoints.

RESPONSE FORMAT:
    All API responses follow this structure:

    Success:
        {
            "data": <response data>,
            "error": null,
            "status": "success"
        }

    Error:
        {
            "data": null,
            "error": {
                "code": "ERROR_CODE",
                "message": "Human-readable message",
                "details": {...}  # Optional extra context
            },
            "status": "error"
        }

Handlers raise ApiError (an HTTPException carrying an error code). The
exception handlers registered by install_exception_handlers() render every
HTTPException, validation error and unhandled exception in the envelope.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # 401
    UNAUTHORIZED = "UNAUTHORIZED"

    # 403
    FORBIDDEN = "FORBIDDEN"
    LIMIT_REACHED = "LIMIT_REACHED"
    CANCELLATION_BLOCKED = "CANCELLATION_BLOCKED"

    # 404
    NOT_FOUND = "NOT_FOUND"

    # 400
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_REQUEST = "INVALID_REQUEST"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    ALREADY_PAID = "ALREADY_PAID"

    # 409
    CONFLICT = "CONFLICT"

    # 410
    HOLD_INACTIVE = "HOLD_INACTIVE"
    HOLD_EXPIRED = "HOLD_EXPIRED"

    # 429
    RATE_LIMITED = "RATE_LIMITED"
    ACTIVE_HOLD_EXISTS = "ACTIVE_HOLD_EXISTS"

    # 500
    INTERNAL_ERROR = "INTERNAL_ERROR"


_CODE_FOR_STATUS = {
    status.HTTP_400_BAD_REQUEST: ErrorCodes.VALIDATION_ERROR,
    status.HTTP_401_UNAUTHORIZED: ErrorCodes.UNAUTHORIZED,
    status.HTTP_403_FORBIDDEN: ErrorCodes.FORBIDDEN,
    status.HTTP_404_NOT_FOUND: ErrorCodes.NOT_FOUND,
    status.HTTP_409_CONFLICT: ErrorCodes.CONFLICT,
    status.HTTP_429_TOO_MANY_REQUESTS: ErrorCodes.RATE_LIMITED,
}


class ApiError(HTTPException):
    """
    HTTPException that carries a machine-readable error code.

    Example:
        raise ApiError(409, ErrorCodes.CONFLICT, "This time slot is no longer available.")
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[Any] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code = code
        self.message = message
        self.details = details


def not_found(message: str = "Resource not found") -> ApiError:
    return ApiError(status.HTTP_404_NOT_FOUND, ErrorCodes.NOT_FOUND, message)


def validation_error(message: str, details: Optional[Any] = None) -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, ErrorCodes.VALIDATION_ERROR, message, details)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(data: Any) -> dict:
    """
    Create a standardized success response dict.

    Use this for simple responses where Pydantic model isn't needed.
    """
    return {"data": data, "error": None, "status": "success"}


def error_response(
    code: str,
    message: str,
    details: Optional[Any] = None,
) -> dict:
    """Create a standardized error response dict."""
    response = {
        "data": None,
        "error": {
            "code": code,
            "message": message,
            "details": None,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response


def get_pagination_params(page: Optional[int] = 1, limit: Optional[int] = 20) -> tuple[int, int, int]:
    """Clamp page/limit and derive the row offset."""
    page = max(1, page or 1)
    limit = min(100, max(1, limit or 20))
    offset = (page - 1) * limit
    return page, limit, offset


def paginated_response(items: list, total: int, page: int, limit: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "has_more": total > page * limit,
    }


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _envelope(status_code: int, code: str, message: str, details: Any = None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(error_response(code, message, details)),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = getattr(exc, "code", None) or _CODE_FOR_STATUS.get(exc.status_code, ErrorCodes.INTERNAL_ERROR)
    details = getattr(exc, "details", None)
    if isinstance(exc.detail, str):
        message = exc.detail
    else:
        message = "Request failed"
        details = details or exc.detail
    return _envelope(exc.status_code, code, message, details, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "path": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    logger.info(f"Validation failed on {request.url.path}: {details}")
    return _envelope(status.HTTP_400_BAD_REQUEST, ErrorCodes.VALIDATION_ERROR, "Validation failed", details)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _envelope(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorCodes.INTERNAL_ERROR,
        "An unexpected error occurred",
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
