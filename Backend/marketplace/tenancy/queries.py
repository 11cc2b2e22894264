"""
Provider-scoped query helpers.

ALL queries for provider data MUST use these helpers or include an explicit
provider_id filter.

Usage:
    from marketplace.tenancy.queries import scoped_select, require_owned

    stmt = scoped_select(Offering, ctx.provider_id).where(Offering.is_active.is_(True))
    booking = await require_owned(session, Booking, booking_id, ctx.provider_id)
"""

import uuid
from typing import Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..models import Booking, Offering, ProviderLocation, ProviderStaff

T = TypeVar("T", bound=DeclarativeBase)


# ────────────────────────────────────────────────────────────────
# Composable Query Helpers
# ────────────────────────────────────────────────────────────────

def scoped_select(model: Type[T], provider_id: uuid.UUID) -> Select:
    """
    Create a SELECT statement pre-filtered by provider_id.

    Usage:
        stmt = scoped_select(TimeBlock, ctx.provider_id).where(TimeBlock.is_active.is_(True))
    """
    return select(model).where(model.provider_id == provider_id)


async def require_owned(
    session: AsyncSession,
    model: Type[T],
    entity_id: uuid.UUID,
    provider_id: uuid.UUID,
) -> Optional[T]:
    """
    Fetch an entity by ID, validating provider ownership.
    Returns None if not found or owned by another provider.
    """
    result = await session.execute(
        select(model).where(
            model.id == entity_id,
            model.provider_id == provider_id,
        )
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Entity Queries
# ────────────────────────────────────────────────────────────────

async def get_booking_for_provider(
    session: AsyncSession,
    provider_id: uuid.UUID,
    booking_id: uuid.UUID,
) -> Optional[Booking]:
    return await require_owned(session, Booking, booking_id, provider_id)


async def get_offerings_by_ids(
    session: AsyncSession,
    provider_id: uuid.UUID,
    offering_ids: Sequence[uuid.UUID],
) -> dict[uuid.UUID, Offering]:
    """Get offerings by ID, scoped to provider, keyed by id."""
    if not offering_ids:
        return {}
    result = await session.execute(
        scoped_select(Offering, provider_id).where(Offering.id.in_(set(offering_ids)))
    )
    return {offering.id: offering for offering in result.scalars().all()}


async def get_staff_member(
    session: AsyncSession,
    provider_id: uuid.UUID,
    staff_id: uuid.UUID,
    active_only: bool = True,
) -> Optional[ProviderStaff]:
    stmt = scoped_select(ProviderStaff, provider_id).where(ProviderStaff.id == staff_id)
    if active_only:
        stmt = stmt.where(ProviderStaff.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_active_locations(
    session: AsyncSession,
    provider_id: uuid.UUID,
) -> Sequence[ProviderLocation]:
    """Active locations, primary first then oldest first."""
    result = await session.execute(
        scoped_select(ProviderLocation, provider_id)
        .where(ProviderLocation.is_active.is_(True))
        .order_by(ProviderLocation.is_primary.desc(), ProviderLocation.created_at.asc())
    )
    return result.scalars().all()
