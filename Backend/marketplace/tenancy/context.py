"""
Provider tenancy context.

Every provider back-office request runs against exactly one provider. The
ProviderContext is resolved from the authenticated user (owner first, then
active staff membership) and must be established before any provider-scoped
database operation.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.db import get_session
from ..core.request_context import RequestContext, get_request_context, require_role
from ..core.responses import not_found
from ..models import Provider, ProviderStaff, StaffRole, UserRole


logger = logging.getLogger(__name__)

PROVIDER_ROLES = [UserRole.PROVIDER_OWNER.value, UserRole.PROVIDER_STAFF.value, UserRole.SUPERADMIN.value]


@dataclass(frozen=True)
class ProviderContext:
    """
    Immutable context representing the provider a request operates on.

    Attributes:
        provider_id: providers.id
        provider_name: Business name
        user_id: The acting user
        staff_id: provider_staff.id for staff members (None for owners without a staff row)
        staff_role: owner, manager or employee
        is_owner: True when the user owns the provider
        timezone: IANA timezone of the provider
    """

    provider_id: uuid.UUID
    user_id: uuid.UUID
    provider_name: Optional[str] = None
    staff_id: Optional[uuid.UUID] = None
    staff_role: str = StaffRole.EMPLOYEE.value
    is_owner: bool = False
    timezone: str = "Africa/Johannesburg"


# ────────────────────────────────────────────────────────────────
# Resolution Functions
# ────────────────────────────────────────────────────────────────

async def resolve_provider_for_user(
    session: AsyncSession,
    user_id: uuid.UUID,
) -> Optional[ProviderContext]:
    """
    Resolve the provider a user works for.

    Owners are matched on providers.owner_user_id; otherwise an active
    provider_staff row for the user is used.
    """
    result = await session.execute(
        select(Provider).where(Provider.owner_user_id == user_id).order_by(Provider.created_at).limit(1)
    )
    provider = result.scalar_one_or_none()
    if provider:
        staff_result = await session.execute(
            select(ProviderStaff).where(
                ProviderStaff.provider_id == provider.id,
                ProviderStaff.user_id == user_id,
            )
        )
        staff = staff_result.scalars().first()
        return ProviderContext(
            provider_id=provider.id,
            user_id=user_id,
            provider_name=provider.business_name,
            staff_id=staff.id if staff else None,
            staff_role=StaffRole.OWNER.value,
            is_owner=True,
            timezone=provider.timezone,
        )

    result = await session.execute(
        select(ProviderStaff, Provider)
        .join(Provider, Provider.id == ProviderStaff.provider_id)
        .where(
            ProviderStaff.user_id == user_id,
            ProviderStaff.is_active.is_(True),
        )
        .limit(1)
    )
    row = result.first()
    if not row:
        return None

    staff, provider = row
    return ProviderContext(
        provider_id=provider.id,
        user_id=user_id,
        provider_name=provider.business_name,
        staff_id=staff.id,
        staff_role=staff.role,
        is_owner=staff.role == StaffRole.OWNER.value,
        timezone=provider.timezone,
    )


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

async def get_provider_context(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
) -> ProviderContext:
    """
    FastAPI dependency for provider back-office routes.

    Raises:
        HTTPException 401: Not signed in
        HTTPException 403: Not a provider role
        ApiError 404: Signed in but not attached to any provider
    """
    require_role(ctx, PROVIDER_ROLES)
    provider_ctx = await resolve_provider_for_user(session, ctx.user_uuid)
    if not provider_ctx:
        logger.warning(f"No provider found for user {ctx.user_id}")
        raise not_found("Provider not found")
    return provider_ctx
