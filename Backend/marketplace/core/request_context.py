"""
Request Context Resolution Module

This module is the single place where request identity is resolved.
All API routes go through it for authentication.

ARCHITECTURE:
    1. resolve_request_context() extracts identity from the request
    2. It verifies the Bearer JWT (or X-User-Id in dev mode)
    3. It loads the user row to obtain the platform role
    4. Returns a RequestContext used by every authorization check

AUTH METHOD:
    - JWT Bearer token verified by jwt_auth.verify_access_token
    - X-User-Id header only when DISABLE_AUTH_CHECKS is enabled
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .db import get_session

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """
    Resolved request context containing identity and platform role.
    """
    # Identity (empty when anonymous)
    user_id: str

    # Platform role: customer, provider_owner, provider_staff, superadmin
    role: str = ""

    # Auth metadata
    auth_method: str = "none"  # 'jwt', 'header', 'none'
    is_authenticated: bool = True

    # Request metadata
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def user_uuid(self) -> Optional[uuid.UUID]:
        return uuid.UUID(self.user_id) if self.user_id else None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_user_id(request: Request, require_auth: bool) -> tuple[Optional[str], str]:
    settings = get_settings()
    auth_header = request.headers.get("Authorization", "")

    if auth_header.startswith("Bearer "):
        from ..jwt_auth import verify_access_token

        token = auth_header[7:].strip()
        try:
            payload = verify_access_token(token)
            return payload.get("sub"), "jwt"
        except HTTPException:
            if require_auth and not settings.disable_auth_checks:
                raise
            logger.debug("JWT verification failed, continuing without identity")

    if settings.disable_auth_checks:
        header_user = (request.headers.get("X-User-Id") or "").strip()
        if header_user:
            logger.warning(f"Dev mode: Using X-User-Id header: {header_user}")
            return header_user, "header"

    return None, "none"


async def resolve_request_context(
    request: Request,
    session: AsyncSession,
    require_auth: bool = True,
) -> RequestContext:
    """
    Resolve the identity and role from a request.

    Raises:
        HTTPException 401: If require_auth=True and no valid identity found,
            or the identity does not match a known user
    """
    from ..models import User

    user_id, auth_method = _extract_user_id(request, require_auth)

    if not user_id:
        if require_auth:
            logger.warning(f"Authentication failed on {request.url.path}: no valid token")
            raise _unauthorized("Authentication required. Please sign in.")
        return RequestContext(user_id="", auth_method="none", is_authenticated=False)

    try:
        user_uuid = uuid.UUID(str(user_id))
    except ValueError:
        logger.warning(f"Authentication failed: malformed subject {user_id!r}")
        raise _unauthorized("Invalid token subject")

    user = await session.get(User, user_uuid)
    if not user:
        if require_auth:
            logger.warning(f"Authentication failed: user {user_id} not found")
            raise _unauthorized("User not found")
        return RequestContext(user_id="", auth_method="none", is_authenticated=False)

    ctx = RequestContext(
        user_id=str(user.id),
        role=user.role,
        auth_method=auth_method,
        is_authenticated=True,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )
    logger.debug(f"Resolved user {ctx.user_id} with role {ctx.role} via {auth_method}")
    return ctx


def require_role(ctx: RequestContext, allowed_roles: list[str]) -> str:
    """
    Check the caller's platform role.

    Raises:
        HTTPException 403: If the role is not one of allowed_roles
    """
    if ctx.role not in allowed_roles:
        logger.warning(
            f"Authorization failed: User {ctx.user_id} has role {ctx.role}, "
            f"needs one of {allowed_roles}"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Access denied. Required role: {', '.join(allowed_roles)}.",
        )
    return ctx.role


async def get_request_context(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> RequestContext:
    """
    FastAPI dependency for getting request context.

        @router.get("/something")
        async def handler(ctx: RequestContext = Depends(get_request_context)):
            ...
    """
    return await resolve_request_context(request, session, require_auth=True)


async def get_optional_request_context(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> RequestContext:
    """
    FastAPI dependency for optional auth context.

    Returns context even if not authenticated (is_authenticated will be False).
    """
    return await resolve_request_context(request, session, require_auth=False)


def require_roles(*roles: str):
    """
    Dependency factory that resolves the context and enforces a role set.

        @router.get("/admin/bookings")
        async def handler(ctx: RequestContext = Depends(require_roles("superadmin"))):
            ...
    """
    async def dependency(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        require_role(ctx, list(roles))
        return ctx

    return dependency
