"""
Provider back-office booking routes.

    GET    /api/provider/bookings                 -> List bookings (filters + pagination)
    POST   /api/provider/bookings                 -> Create a booking (walk-in or existing customer)
    GET    /api/provider/bookings/{id}            -> Booking detail
    PATCH  /api/provider/bookings/{id}            -> Update status / reschedule / reassign staff
    POST   /api/provider/bookings/{id}/arrive     -> Mark provider arrival (at-home)
    POST   /api/provider/bookings/{id}/mark-paid  -> Record an offline payment
    POST   /api/provider/bookings/bulk             -> Cancel or complete many bookings

All routes resolve a ProviderContext first; every query is scoped to it.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import (
    BookingFilters,
    BulkBookingAction,
    MarkPaidRequest,
    ProviderBookingCreate,
    ProviderBookingUpdate,
    bulk_update_provider_bookings,
    create_provider_booking,
    get_provider_booking,
    list_provider_bookings,
    mark_booking_arrived,
    mark_booking_paid,
    update_provider_booking,
)
from .core.db import get_session
from .core.responses import success_response
from .tenancy.context import ProviderContext, get_provider_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/provider/bookings", tags=["provider-bookings"])


@router.get("")
async def list_bookings(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    staff_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = Query(default=1),
    limit: int = Query(default=20),
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    filters = BookingFilters(
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        staff_id=staff_id,
        search=search,
    )
    data = await list_provider_bookings(session, provider_ctx, filters, page, limit)
    return success_response(data)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: ProviderBookingCreate,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    data = await create_provider_booking(session, provider_ctx, provider_ctx.user_id, request)
    return success_response(data)


@router.post("/bulk")
async def bulk_action(
    request: BulkBookingAction,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    data = await bulk_update_provider_bookings(session, provider_ctx, request.booking_ids, request.action)
    return success_response(data)


@router.get("/{booking_id}")
async def get_booking(
    booking_id: uuid.UUID,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    return success_response(await get_provider_booking(session, provider_ctx, booking_id))


@router.patch("/{booking_id}")
async def update_booking(
    booking_id: uuid.UUID,
    patch: ProviderBookingUpdate,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    data = await update_provider_booking(session, provider_ctx, provider_ctx.user_id, booking_id, patch)
    return success_response(data)


@router.post("/{booking_id}/arrive")
async def arrive(
    booking_id: uuid.UUID,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    data = await mark_booking_arrived(session, provider_ctx, provider_ctx.user_id, booking_id)
    return success_response(data)


@router.post("/{booking_id}/mark-paid")
async def mark_paid(
    booking_id: uuid.UUID,
    request: MarkPaidRequest,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    data = await mark_booking_paid(session, provider_ctx, provider_ctx.user_id, booking_id, request)
    return success_response(data)
