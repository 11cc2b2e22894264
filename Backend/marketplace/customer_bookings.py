"""
Customer account routes: own bookings and loyalty balance.

    GET  /api/me/bookings?status=upcoming|past|cancelled|<status>
    GET  /api/me/bookings/{id}
    POST /api/me/bookings/{id}/cancel
    GET  /api/me/loyalty
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import cancel_customer_booking, get_customer_booking, list_customer_bookings
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .loyalty import get_loyalty_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/me", tags=["customer"])


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    version: Optional[int] = None


@router.get("/bookings")
async def my_bookings(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(default=1),
    limit: int = Query(default=20),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    data = await list_customer_bookings(session, ctx.user_uuid, status_filter, page, limit)
    return success_response(data)


@router.get("/bookings/{booking_id}")
async def my_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    return success_response(await get_customer_booking(session, ctx.user_uuid, booking_id))


@router.post("/bookings/{booking_id}/cancel")
async def cancel_my_booking(
    booking_id: uuid.UUID,
    request: Optional[CancelBookingRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    request = request or CancelBookingRequest()
    data = await cancel_customer_booking(session, ctx.user_uuid, booking_id, request.reason, request.version)
    return success_response(data)


@router.get("/loyalty")
async def my_loyalty(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    return success_response(await get_loyalty_summary(session, ctx.user_uuid))
