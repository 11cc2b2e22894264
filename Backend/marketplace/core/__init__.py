"""
Core module - configuration, database, request context, and response formatting.
"""
from .config import get_settings
from .db import get_session, Base, engine, AsyncSessionLocal, UTCDateTime, utcnow, ensure_utc
from .request_context import (
    RequestContext,
    resolve_request_context,
    require_role,
    require_roles,
    get_request_context,
    get_optional_request_context,
)
from .responses import (
    ApiError,
    ErrorCodes,
    success_response,
    error_response,
    get_pagination_params,
    paginated_response,
    install_exception_handlers,
)

__all__ = [
    # Config
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    "UTCDateTime",
    "utcnow",
    "ensure_utc",
    # Request Context
    "RequestContext",
    "resolve_request_context",
    "require_role",
    "require_roles",
    "get_request_context",
    "get_optional_request_context",
    # Responses
    "ApiError",
    "ErrorCodes",
    "success_response",
    "error_response",
    "get_pagination_params",
    "paginated_response",
    "install_exception_handlers",
]
