"""
Public booking API.

Customers browse availability anonymously, reserve a slot with a short-lived
hold, sign in, and then consume the hold into a real booking:

    GET    /api/public/providers/{slug}/availability   -> Per-staff slot lists
    POST   /api/public/booking-holds                   -> Hold a slot (optional auth, rate limited)
    DELETE /api/public/booking-holds/{id}              -> Release a hold
    POST   /api/public/booking-holds/{id}/consume      -> Turn a hold into a booking (auth required)

Holds are identified to guests by a fingerprint hash (SHA-256 of a client
supplied fingerprint, or of IP + user agent).
"""

import hashlib
import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import get_provider_availability
from .bookings import (
    add_booking_event,
    determine_booking_status,
    effective_tax_rate,
    generate_booking_number,
    persist_booking,
    slot_unavailable,
)
from .conflicts import check_booking_conflict, check_hold_conflict
from .core.config import get_settings
from .core.db import ensure_utc, get_session, utcnow
from .core.request_context import RequestContext, get_optional_request_context, get_request_context
from .core.responses import ApiError, ErrorCodes, not_found, success_response, validation_error
from .loyalty import redeem_points
from .models import (
    Booking,
    BookingHold,
    BookingService,
    HoldStatus,
    LocationType,
    Offering,
    Provider,
    ProviderLocation,
)
from . import notifications
from .rate_limiter import RateLimiter, rate_limit_dependency
from .tenancy.queries import get_offerings_by_ids, get_staff_member, require_owned

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/api/public", tags=["public-booking"])

HOLD_EXPIRED_MESSAGE = "Your hold has expired. Please select a new time."


# ────────────────────────────────────────────────────────────────
# Pydantic Models
# ────────────────────────────────────────────────────────────────

class HoldServiceInput(BaseModel):
    offering_id: uuid.UUID
    staff_id: Optional[uuid.UUID] = None


class HoldAddress(BaseModel):
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class HoldCreateRequest(BaseModel):
    provider_id: uuid.UUID
    services: list[HoldServiceInput] = Field(..., min_length=1)
    start_at: datetime
    location_type: str = Field(..., pattern="^(at_salon|at_home)$")
    location_id: Optional[uuid.UUID] = None
    address: Optional[HoldAddress] = None
    guest_fingerprint: Optional[str] = Field(default=None, max_length=512)


class HoldConsumeRequest(BaseModel):
    guest_fingerprint: Optional[str] = Field(default=None, max_length=512)
    loyalty_points_to_redeem: Optional[int] = Field(default=None, ge=1)
    special_requests: Optional[str] = None


# ────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────

def fingerprint_hash(request: Request, guest_fingerprint: Optional[str]) -> str:
    if guest_fingerprint:
        source = guest_fingerprint
    else:
        source = f"{RateLimiter.client_ip(request)}|{request.headers.get('User-Agent', '')}"
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


def _parse_day(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise validation_error("date must be formatted as YYYY-MM-DD", [{"path": "date", "message": "Invalid date"}])


def _hold_payload(hold: BookingHold) -> dict:
    return {
        "hold_id": str(hold.id),
        "expires_at": hold.expires_at.isoformat(),
        "start_at": hold.start_at.isoformat(),
        "end_at": hold.end_at.isoformat(),
        "services": hold.services,
    }


# ────────────────────────────────────────────────────────────────
# Availability
# ────────────────────────────────────────────────────────────────

@router.get("/providers/{slug}/availability")
async def provider_availability(
    slug: str,
    day: str = Query(..., alias="date"),
    offering_id: uuid.UUID = Query(...),
    staff_id: Optional[uuid.UUID] = None,
    location_type: str = Query(default=LocationType.AT_SALON.value, pattern="^(at_salon|at_home)$"),
    avoid_gaps: bool = False,
    session: AsyncSession = Depends(get_session),
):
    provider = (await session.execute(select(Provider).where(Provider.slug == slug))).scalar_one_or_none()
    if provider is None or provider.status != "active":
        raise not_found("Provider not found")

    target_day = _parse_day(day)
    today = datetime.now(ZoneInfo(provider.timezone)).date()
    if target_day < today:
        raise validation_error("Cannot check availability for a past date")

    offering = await require_owned(session, Offering, offering_id, provider.id)
    if offering is None or not offering.is_active:
        raise not_found("Service not found")

    staff = await get_provider_availability(
        session,
        provider,
        target_day,
        offering,
        staff_id=staff_id,
        location_type=location_type,
        avoid_gaps=avoid_gaps,
    )
    return success_response({
        "provider_id": str(provider.id),
        "date": target_day.isoformat(),
        "timezone": provider.timezone,
        "offering_id": str(offering.id),
        "duration_minutes": offering.duration_minutes,
        "staff": staff,
    })


# ────────────────────────────────────────────────────────────────
# Booking holds
# ────────────────────────────────────────────────────────────────

@router.post(
    "/booking-holds",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_dependency(settings.hold_rate_limit_per_minute, 60))],
)
async def create_booking_hold(
    body: HoldCreateRequest,
    request: Request,
    ctx: RequestContext = Depends(get_optional_request_context),
    session: AsyncSession = Depends(get_session),
):
    now = utcnow()
    start_at = ensure_utc(body.start_at)
    if start_at <= now:
        raise validation_error("start_at must be in the future")

    provider = await session.get(Provider, body.provider_id)
    if provider is None:
        raise not_found("Provider not found")
    if provider.status != "active":
        raise validation_error("Provider is not available for booking")

    offerings = await get_offerings_by_ids(session, provider.id, [s.offering_id for s in body.services])
    for item in body.services:
        offering = offerings.get(item.offering_id)
        if offering is None or not offering.is_active:
            raise validation_error("Invalid service selection")
        if item.staff_id and await get_staff_member(session, provider.id, item.staff_id) is None:
            raise validation_error("Invalid staff selection")

    if body.location_type == LocationType.AT_SALON.value:
        if not body.location_id:
            raise validation_error("location_id is required for at_salon bookings")
        if await require_owned(session, ProviderLocation, body.location_id, provider.id) is None:
            raise validation_error("Location not found for this provider")
    elif body.address is None:
        raise validation_error("address is required for at_home bookings")

    staff_id = body.services[0].staff_id
    snapshot = []
    cursor = start_at
    for item in body.services:
        offering = offerings[item.offering_id]
        end = cursor + timedelta(minutes=offering.duration_minutes)
        snapshot.append({
            "offering_id": str(offering.id),
            "staff_id": str(item.staff_id or staff_id) if (item.staff_id or staff_id) else None,
            "duration_minutes": offering.duration_minutes,
            "buffer_minutes": offering.buffer_minutes,
            "processing_minutes": offering.processing_minutes,
            "finishing_minutes": offering.finishing_minutes,
            "price_cents": offering.price_cents,
            "scheduled_start_at": cursor.isoformat(),
            "scheduled_end_at": end.isoformat(),
        })
        cursor = end + timedelta(minutes=offering.buffer_minutes or 0)
    end_at = datetime.fromisoformat(snapshot[-1]["scheduled_end_at"]) + timedelta(
        minutes=settings.booking_buffer_minutes
    )

    fp_hash = fingerprint_hash(request, body.guest_fingerprint)
    await session.execute(
        update(BookingHold)
        .where(
            BookingHold.guest_fingerprint_hash == fp_hash,
            BookingHold.hold_status == HoldStatus.ACTIVE.value,
            BookingHold.expires_at <= now,
        )
        .values(hold_status=HoldStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    active_holds = await session.scalar(
        select(func.count(BookingHold.id)).where(
            BookingHold.guest_fingerprint_hash == fp_hash,
            BookingHold.hold_status == HoldStatus.ACTIVE.value,
            BookingHold.expires_at > now,
        )
    )
    if active_holds >= settings.max_active_holds_per_fingerprint:
        logger.warning(f"Active hold already exists for fingerprint {fp_hash[:12]}")
        raise ApiError(
            429,
            ErrorCodes.ACTIVE_HOLD_EXISTS,
            "You already have an active booking hold. Please complete or cancel it first.",
        )

    if staff_id:
        conflict = await check_booking_conflict(
            session, provider.id, staff_id, start_at, end_at, location_id=body.location_id
        )
        if conflict.has_conflict:
            raise slot_unavailable()
    holds = await check_hold_conflict(session, provider.id, staff_id, start_at, end_at, now)
    if holds.has_conflict:
        logger.warning(f"Hold overlap at provider {provider.id} for {start_at.isoformat()}")
        raise slot_unavailable()

    hold = BookingHold(
        id=uuid.uuid4(),
        provider_id=provider.id,
        staff_id=staff_id,
        services=snapshot,
        location_type=body.location_type,
        location_id=body.location_id if body.location_type == LocationType.AT_SALON.value else None,
        address=body.address.model_dump() if body.address else None,
        start_at=start_at,
        end_at=end_at,
        expires_at=now + timedelta(minutes=settings.hold_ttl_minutes),
        hold_status=HoldStatus.ACTIVE.value,
        guest_fingerprint_hash=fp_hash,
        created_by_user_id=ctx.user_uuid if ctx.is_authenticated else None,
    )
    session.add(hold)
    await session.commit()

    logger.info(f"Created hold {hold.id} at provider {provider.id} ({start_at.isoformat()} - {end_at.isoformat()})")
    return success_response(_hold_payload(hold))


@router.delete("/booking-holds/{hold_id}")
async def release_booking_hold(
    hold_id: uuid.UUID,
    request: Request,
    guest_fingerprint: Optional[str] = None,
    ctx: RequestContext = Depends(get_optional_request_context),
    session: AsyncSession = Depends(get_session),
):
    hold = await session.get(BookingHold, hold_id)
    if hold is None:
        raise not_found("Hold not found")

    is_creator = ctx.is_authenticated and hold.created_by_user_id == ctx.user_uuid
    same_fingerprint = hold.guest_fingerprint_hash == fingerprint_hash(request, guest_fingerprint)
    if not (is_creator or same_fingerprint):
        raise ApiError(403, ErrorCodes.FORBIDDEN, "You cannot release this hold")
    if hold.hold_status != HoldStatus.ACTIVE.value:
        raise ApiError(410, ErrorCodes.HOLD_INACTIVE, "This hold is no longer active.")

    hold.hold_status = HoldStatus.RELEASED.value
    await session.commit()
    logger.info(f"Released hold {hold.id}")
    return success_response({"hold_id": str(hold.id), "hold_status": hold.hold_status})


@router.post("/booking-holds/{hold_id}/consume", status_code=status.HTTP_201_CREATED)
async def consume_booking_hold(
    hold_id: uuid.UUID,
    request: Request,
    body: Optional[HoldConsumeRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    body = body or HoldConsumeRequest()
    now = utcnow()

    hold = await session.get(BookingHold, hold_id)
    if hold is None:
        raise not_found("Hold not found")
    if hold.hold_status != HoldStatus.ACTIVE.value:
        message = HOLD_EXPIRED_MESSAGE if hold.hold_status == HoldStatus.EXPIRED.value else "This slot is no longer available."
        raise ApiError(410, ErrorCodes.HOLD_INACTIVE, message)
    if hold.expires_at <= now:
        hold.hold_status = HoldStatus.EXPIRED.value
        await session.commit()
        logger.info(f"Hold {hold.id} expired before consumption")
        raise ApiError(410, ErrorCodes.HOLD_EXPIRED, HOLD_EXPIRED_MESSAGE)

    user_id = ctx.user_uuid
    owns_hold = (
        hold.created_by_user_id is None
        or hold.created_by_user_id == user_id
        or hold.guest_fingerprint_hash == fingerprint_hash(request, body.guest_fingerprint)
    )
    if not owns_hold:
        logger.warning(f"User {user_id} tried to consume hold {hold.id} owned by {hold.created_by_user_id}")
        raise ApiError(403, ErrorCodes.FORBIDDEN, "This hold belongs to another customer")

    provider = await session.get(Provider, hold.provider_id)
    if provider is None:
        raise not_found("Provider not found")

    services = [
        BookingService(
            id=uuid.uuid4(),
            offering_id=uuid.UUID(item["offering_id"]),
            staff_id=uuid.UUID(item["staff_id"]) if item.get("staff_id") else None,
            duration_minutes=item["duration_minutes"],
            buffer_minutes=item.get("buffer_minutes", 0),
            processing_minutes=item.get("processing_minutes", 0),
            finishing_minutes=item.get("finishing_minutes", 0),
            price_cents=item.get("price_cents", 0),
            scheduled_start_at=datetime.fromisoformat(item["scheduled_start_at"]),
            scheduled_end_at=datetime.fromisoformat(item["scheduled_end_at"]),
        )
        for item in hold.services
    ]
    subtotal = sum(service.price_cents for service in services)
    tax_rate = effective_tax_rate(None, provider, settings)
    tax_cents = round(subtotal * tax_rate / 100)
    address = hold.address or {}
    booking_status = determine_booking_status(provider)

    booking = Booking(
        id=uuid.uuid4(),
        booking_number=await generate_booking_number(session, provider.id),
        provider_id=provider.id,
        customer_id=user_id,
        status=booking_status,
        location_type=hold.location_type,
        location_id=hold.location_id,
        address_line1=address.get("line1"),
        address_line2=address.get("line2"),
        address_city=address.get("city"),
        address_state=address.get("state"),
        address_country=address.get("country"),
        address_postal_code=address.get("postal_code"),
        scheduled_at=hold.start_at,
        booking_source="online",
        subtotal_cents=subtotal,
        tax_rate=tax_rate,
        tax_cents=tax_cents,
        total_cents=subtotal + tax_cents,
        currency=provider.currency or settings.default_currency,
        special_requests=body.special_requests,
    )
    await persist_booking(
        session, provider, booking, services, hold.staff_id, hold.start_at, hold.end_at, exclude_hold_id=hold.id
    )

    if body.loyalty_points_to_redeem:
        try:
            discount = await redeem_points(session, user_id, booking, body.loyalty_points_to_redeem)
        except ValueError as e:
            raise validation_error(str(e))
        booking.discount_cents = discount
        booking.discount_reason = f"Loyalty redemption ({body.loyalty_points_to_redeem} points)"
        booking.total_cents = max(0, subtotal - discount) + tax_cents

    hold.hold_status = HoldStatus.CONSUMED.value
    hold.booking_id = booking.id
    hold.created_by_user_id = user_id

    add_booking_event(
        session, booking, "created", {"status": booking_status, "booking_source": "online", "hold_id": str(hold.id)},
        created_by=user_id,
    )
    await notifications.create_notification(
        session,
        provider.owner_user_id,
        notifications.NEW_APPOINTMENT,
        "New online booking",
        f"Booking {booking.booking_number} was made online for {hold.start_at.isoformat()}.",
        payload={"booking_id": str(booking.id), "booking_number": booking.booking_number},
    )
    await session.commit()

    logger.info(f"Hold {hold.id} consumed into booking {booking.booking_number} by {user_id}")
    return success_response({
        "booking_id": str(booking.id),
        "booking_number": booking.booking_number,
        "status": booking.status,
    })
