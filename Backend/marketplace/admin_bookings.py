"""
Platform admin booking routes (superadmin only).

    GET  /api/admin/bookings
    GET  /api/admin/bookings/{id}
    POST /api/admin/bookings/bulk   {booking_ids: [...], action: cancel|complete}
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import (
    BookingFilters,
    BulkBookingAction,
    bulk_update_bookings,
    get_admin_booking,
    list_admin_bookings,
)
from .core.db import get_session
from .core.request_context import RequestContext, require_roles
from .core.responses import success_response
from .models import UserRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/bookings", tags=["admin-bookings"])

require_superadmin = require_roles(UserRole.SUPERADMIN.value)


@router.get("")
async def list_bookings(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    provider_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = Query(default=1),
    limit: int = Query(default=20),
    ctx: RequestContext = Depends(require_superadmin),
    session: AsyncSession = Depends(get_session),
):
    filters = BookingFilters(status=status_filter, provider_id=provider_id, search=search)
    return success_response(await list_admin_bookings(session, filters, page, limit))


@router.post("/bulk")
async def bulk_action(
    request: BulkBookingAction,
    ctx: RequestContext = Depends(require_superadmin),
    session: AsyncSession = Depends(get_session),
):
    data = await bulk_update_bookings(session, ctx, request.booking_ids, request.action)
    return success_response(data)


@router.get("/{booking_id}")
async def get_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(require_superadmin),
    session: AsyncSession = Depends(get_session),
):
    return success_response(await get_admin_booking(session, booking_id))
