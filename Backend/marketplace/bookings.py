"""
Booking service layer.

Everything that creates or mutates a Booking goes through this module so the
provider portal, customer account pages, admin tools and public checkout all
share the same rules:

- walk-in customer provisioning
- booking numbers unique per provider (BK0001, BK0002, ...)
- chained service schedules and the staff conflict check
- locking insert vs. direct insert
- optimistic locking on updates (Booking.version)
- loyalty award on completion and reversal on cancellation
"""

import logging
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .auth import (
    AUDIT_BOOKING_BULK_CANCELLED,
    AUDIT_BOOKING_BULK_COMPLETED,
    AUDIT_BOOKING_CREATED,
    AUDIT_BOOKING_UPDATED,
    AUDIT_PAYMENT_RECORDED,
    log_audit,
    require_permission,
)
from .booking_status import (
    ACTIVE_BOOKING_STATUSES,
    EVENT_TYPE_FOR_STATUS,
    map_status_to_database,
    map_status_to_provider,
    parse_status_filter,
    stage_for_status,
)
from .cancellation_policy import evaluate_cancellation, get_cancellation_policy
from .conflicts import (
    can_override_double_booking,
    check_booking_conflict,
    check_hold_conflict,
    lock_staff_schedule,
)
from .core.config import Settings, get_settings
from .core.db import ensure_utc, utcnow
from .core.request_context import RequestContext
from .core.responses import (
    ApiError,
    ErrorCodes,
    get_pagination_params,
    not_found,
    paginated_response,
    validation_error,
)
from .loyalty import award_points_for_completion, reverse_points_for_cancellation
from .models import (
    Booking,
    BookingEvent,
    BookingPayment,
    BookingService,
    BookingStatus,
    LocationType,
    Provider,
    User,
    UserRole,
)
from . import notifications
from .tenancy.context import ProviderContext
from .tenancy.queries import (
    get_booking_for_provider,
    get_offerings_by_ids,
    get_staff_member,
    list_active_locations,
)


logger = logging.getLogger(__name__)

SLOT_UNAVAILABLE_MESSAGE = "This time slot is no longer available. Please select another time."
STALE_BOOKING_MESSAGE = "This booking was modified by another user. Please refresh and try again."

PAYMENT_METHODS = ("cash", "card", "mobile", "bank_transfer", "other")
PAYMENT_PROVIDER_FOR_METHOD = {"cash": "cash", "card": "card_terminal"}

BULK_MAX_IDS = 100

_E164_DIGITS = re.compile(r"^[1-9]\d{7,14}$")
_BOOKING_NUMBER = re.compile(r"^BK(\d+)$")


def slot_unavailable() -> ApiError:
    return ApiError(409, ErrorCodes.CONFLICT, SLOT_UNAVAILABLE_MESSAGE)


def stale_booking() -> ApiError:
    return ApiError(409, ErrorCodes.CONFLICT, STALE_BOOKING_MESSAGE)


# ────────────────────────────────────────────────────────────────
# Request Models
# ────────────────────────────────────────────────────────────────

class ServiceInput(BaseModel):
    offering_id: uuid.UUID
    staff_id: Optional[uuid.UUID] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=24 * 60)
    price_cents: Optional[int] = Field(default=None, ge=0)
    scheduled_start_at: Optional[datetime] = None


class ProviderBookingCreate(BaseModel):
    customer_id: Optional[uuid.UUID] = None
    customer_name: Optional[str] = Field(default=None, max_length=255)
    customer_email: Optional[str] = Field(default=None, max_length=255)
    customer_phone: Optional[str] = Field(default=None, max_length=32)

    scheduled_at: datetime
    services: list[ServiceInput] = Field(default_factory=list)
    offering_id: Optional[uuid.UUID] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=24 * 60)
    price_cents: Optional[int] = Field(default=None, ge=0)
    staff_id: Optional[uuid.UUID] = None
    team_member_id: Optional[uuid.UUID] = None

    status: Optional[str] = None
    location_type: str = Field(default=LocationType.AT_SALON.value, pattern="^(at_salon|at_home)$")
    location_id: Optional[uuid.UUID] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    address_city: Optional[str] = None
    address_state: Optional[str] = None
    address_country: Optional[str] = None
    address_postal_code: Optional[str] = None
    booking_source: Optional[str] = Field(default=None, pattern="^(walk_in|online)$")

    subtotal_cents: Optional[int] = Field(default=None, ge=0)
    discount_cents: int = Field(default=0, ge=0)
    discount_reason: Optional[str] = None
    tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    tax_cents: Optional[int] = Field(default=None, ge=0)
    tip_cents: int = Field(default=0, ge=0)
    travel_fee_cents: int = Field(default=0, ge=0)
    service_fee_cents: Optional[int] = Field(default=None, ge=0)
    service_fee_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    total_cents: Optional[int] = Field(default=None, ge=0)
    special_requests: Optional[str] = None

    @model_validator(mode="after")
    def _require_service(self):
        if not self.services and not self.offering_id:
            raise ValueError("At least one service or an offering_id is required")
        return self


class ProviderBookingUpdate(BaseModel):
    status: Optional[str] = None
    current_stage: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    staff_id: Optional[uuid.UUID] = None
    special_requests: Optional[str] = None
    discount_cents: Optional[int] = Field(default=None, ge=0)
    discount_reason: Optional[str] = None
    tip_cents: Optional[int] = Field(default=None, ge=0)
    cancellation_reason: Optional[str] = None

    # Concurrency tokens, not updatable fields
    version: Optional[int] = None
    updated_at: Optional[datetime] = None

    def changed_fields(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"version", "updated_at"})


class BulkBookingAction(BaseModel):
    booking_ids: list[uuid.UUID] = Field(default_factory=list)
    action: str


class MarkPaidRequest(BaseModel):
    payment_method: str
    amount_cents: Optional[int] = None
    reference: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


# ────────────────────────────────────────────────────────────────
# Customer helpers
# ────────────────────────────────────────────────────────────────

def normalize_phone_to_e164(phone: Optional[str], country_code: Optional[str] = None) -> Optional[str]:
    """
    Normalize a phone number to E.164 (+<digits>).

    Returns None when the result is not a plausible international number.
    """
    if not phone:
        return None
    digits = re.sub(r"[\s\-()]", "", phone)
    if digits.startswith("+"):
        digits = digits[1:]
    elif country_code and digits.startswith("0"):
        digits = country_code.lstrip("+") + digits[1:]
    if not _E164_DIGITS.match(digits):
        return None
    return f"+{digits}"


def create_walk_in_email(settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    return f"walkin+{uuid.uuid4()}@{settings.walk_in_email_domain}"


async def resolve_walk_in_customer(
    session: AsyncSession,
    name: Optional[str],
    email: Optional[str],
    phone: Optional[str],
) -> User:
    """
    Find the customer by email, then by phone, or create a walk-in profile.

    A name is only required when a new profile has to be created. Existing
    profiles missing a name or phone get them filled in.
    """
    settings = get_settings()
    name = (name or "").strip() or None
    email = (email or "").strip().lower() or None
    normalized_phone = normalize_phone_to_e164(phone, settings.default_country_code)

    user = None
    if email:
        user = (await session.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if user is None and phone:
        candidates = [p for p in {phone.strip(), normalized_phone} if p]
        result = await session.execute(select(User).where(User.phone.in_(candidates)).limit(1))
        user = result.scalar_one_or_none()

    if user is not None:
        if name and not user.full_name:
            user.full_name = name
        if normalized_phone and not user.phone:
            user.phone = normalized_phone
        await session.flush()
        return user

    if not name:
        raise validation_error("Customer name is required for new walk-in customers")

    user = User(
        id=uuid.uuid4(),
        email=email or create_walk_in_email(settings),
        full_name=name,
        phone=normalized_phone,
        role=UserRole.CUSTOMER.value,
        is_walk_in=True,
    )
    session.add(user)
    await session.flush()
    logger.info(f"Created walk-in customer {user.id}")
    return user


# ────────────────────────────────────────────────────────────────
# Booking construction helpers
# ────────────────────────────────────────────────────────────────

async def generate_booking_number(session: AsyncSession, provider_id: uuid.UUID) -> str:
    result = await session.execute(
        select(Booking.booking_number)
        .where(Booking.provider_id == provider_id)
        .order_by(Booking.created_at.desc(), Booking.booking_number.desc())
        .limit(1)
    )
    last = result.scalar_one_or_none()
    if not last:
        return "BK0001"
    match = _BOOKING_NUMBER.match(last)
    if not match:
        logger.warning(f"Unparseable booking number {last!r} for provider {provider_id}, restarting sequence")
        return "BK0001"
    return f"BK{int(match.group(1)) + 1:04d}"


def determine_booking_status(provider: Provider, requested: Optional[str] = None) -> str:
    if requested:
        return map_status_to_database(requested)
    if provider.require_booking_confirmation:
        return BookingStatus.PENDING.value
    return provider.default_booking_status or BookingStatus.CONFIRMED.value


def effective_tax_rate(requested: Optional[float], provider: Provider, settings: Settings) -> float:
    for rate in (requested, provider.tax_rate_percent, settings.platform_tax_rate_percent):
        if rate:
            return float(rate)
    return 0.0


async def resolve_location_id(
    session: AsyncSession,
    provider_id: uuid.UUID,
    location_type: Optional[str],
    location_id: Optional[uuid.UUID],
) -> Optional[uuid.UUID]:
    """
    Pick the salon location for at-salon bookings.

    Falls back to the first active salon location (primary first) when none is
    given or when the given one is a base-only location.
    """
    if location_type not in (None, LocationType.AT_SALON.value):
        return location_id

    locations = await list_active_locations(session, provider_id)
    first_salon = next((loc for loc in locations if loc.location_type == "salon"), None)

    if location_id is None:
        return first_salon.id if first_salon else None

    chosen = next((loc for loc in locations if loc.id == location_id), None)
    if chosen is None:
        raise validation_error("Location not found for this provider")
    if chosen.location_type == "base" and first_salon is not None:
        return first_salon.id
    return chosen.id


@dataclass
class ServiceLine:
    offering_id: Optional[uuid.UUID]
    staff_id: Optional[uuid.UUID]
    duration_minutes: int
    buffer_minutes: int = 0
    processing_minutes: int = 0
    finishing_minutes: int = 0
    price_cents: int = 0
    scheduled_start_at: Optional[datetime] = None


def build_service_schedule(
    scheduled_at: datetime,
    lines: Sequence[ServiceLine],
    default_duration: int = 60,
    booking_buffer: int = 15,
) -> tuple[list[BookingService], datetime, datetime]:
    """
    Chain services back to back and return (services, start_at, end_at).

    Each service starts when the previous one ends plus that service's own
    buffer. end_at is the total duration plus the booking buffer, and never
    earlier than the end of the last chained service.
    """
    if not lines:
        raise ValueError("At least one service is required")

    start_at = ensure_utc(lines[0].scheduled_start_at or scheduled_at)
    cursor = start_at
    total_minutes = 0
    services = []
    for line in lines:
        duration = line.duration_minutes or default_duration
        end = cursor + timedelta(minutes=duration)
        services.append(
            BookingService(
                id=uuid.uuid4(),
                offering_id=line.offering_id,
                staff_id=line.staff_id,
                duration_minutes=duration,
                buffer_minutes=line.buffer_minutes,
                processing_minutes=line.processing_minutes,
                finishing_minutes=line.finishing_minutes,
                price_cents=line.price_cents,
                scheduled_start_at=cursor,
                scheduled_end_at=end,
            )
        )
        total_minutes += duration
        cursor = end + timedelta(minutes=line.buffer_minutes or 0)

    end_at = start_at + timedelta(minutes=total_minutes + booking_buffer)
    last_end = services[-1].scheduled_end_at
    return services, start_at, max(end_at, last_end)


async def _service_lines_for_request(
    session: AsyncSession,
    provider_id: uuid.UUID,
    request: ProviderBookingCreate,
    staff_id: Optional[uuid.UUID],
    default_duration: int,
) -> list[ServiceLine]:
    inputs = request.services or [
        ServiceInput(
            offering_id=request.offering_id,
            staff_id=staff_id,
            duration_minutes=request.duration_minutes,
            price_cents=request.price_cents,
        )
    ]
    offerings = await get_offerings_by_ids(session, provider_id, [item.offering_id for item in inputs])
    lines = []
    for item in inputs:
        offering = offerings.get(item.offering_id)
        if offering is None:
            raise validation_error(f"Service {item.offering_id} not found for this provider")
        lines.append(
            ServiceLine(
                offering_id=offering.id,
                staff_id=item.staff_id or staff_id,
                duration_minutes=item.duration_minutes or offering.duration_minutes or default_duration,
                buffer_minutes=offering.buffer_minutes,
                processing_minutes=offering.processing_minutes,
                finishing_minutes=offering.finishing_minutes,
                price_cents=item.price_cents if item.price_cents is not None else offering.price_cents,
                scheduled_start_at=item.scheduled_start_at,
            )
        )
    return lines


async def enforce_monthly_limit(session: AsyncSession, provider: Provider, now: Optional[datetime] = None) -> None:
    if not provider.max_bookings_per_month:
        return
    now = now or utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    count = await session.scalar(
        select(func.count(Booking.id)).where(
            Booking.provider_id == provider.id,
            Booking.created_at >= month_start,
        )
    )
    if count >= provider.max_bookings_per_month:
        logger.warning(f"Provider {provider.id} hit monthly booking limit ({count}/{provider.max_bookings_per_month})")
        raise ApiError(
            403,
            ErrorCodes.LIMIT_REACHED,
            f"Monthly booking limit of {provider.max_bookings_per_month} reached. Upgrade your plan to add more bookings.",
        )


async def persist_booking(
    session: AsyncSession,
    provider: Provider,
    booking: Booking,
    services: list[BookingService],
    staff_id: Optional[uuid.UUID],
    start_at: datetime,
    end_at: datetime,
    exclude_hold_id: Optional[uuid.UUID] = None,
) -> str:
    """
    Insert a booking and its services. Returns the insert path used.

    With a staff member and no double-booking override, the slot is checked,
    the staff schedule locked and the slot re-checked before inserting.
    Otherwise the booking is inserted directly.
    """
    booking.services = services

    if staff_id and not can_override_double_booking(provider):
        conflict = await check_booking_conflict(
            session, provider.id, staff_id, start_at, end_at, location_id=booking.location_id
        )
        if conflict.has_conflict:
            raise slot_unavailable()

        await lock_staff_schedule(session, staff_id)
        conflict = await check_booking_conflict(
            session, provider.id, staff_id, start_at, end_at, location_id=booking.location_id
        )
        if conflict.has_conflict:
            raise slot_unavailable()
        if exclude_hold_id is not None:
            holds = await check_hold_conflict(
                session, provider.id, staff_id, start_at, end_at, utcnow(), exclude_hold_id=exclude_hold_id
            )
            if holds.has_conflict:
                raise slot_unavailable()

        session.add(booking)
        await session.flush()
        logger.info(f"Booking {booking.booking_number} inserted with staff lock for {staff_id}")
        return "locked"

    session.add(booking)
    await session.flush()
    logger.info(f"Booking {booking.booking_number} inserted directly")
    return "direct"


def add_booking_event(
    session: AsyncSession,
    booking: Booking,
    event_type: str,
    event_data: Optional[dict] = None,
    created_by: Optional[uuid.UUID] = None,
) -> BookingEvent:
    event = BookingEvent(
        booking_id=booking.id,
        event_type=event_type,
        event_data=event_data,
        created_by=created_by,
    )
    session.add(event)
    return event


# ────────────────────────────────────────────────────────────────
# Serialization
# ────────────────────────────────────────────────────────────────

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_service(service: BookingService) -> dict:
    return {
        "id": str(service.id),
        "offering_id": str(service.offering_id) if service.offering_id else None,
        "staff_id": str(service.staff_id) if service.staff_id else None,
        "duration_minutes": service.duration_minutes,
        "buffer_minutes": service.buffer_minutes,
        "price_cents": service.price_cents,
        "scheduled_start_at": _iso(service.scheduled_start_at),
        "scheduled_end_at": _iso(service.scheduled_end_at),
    }


def serialize_booking(booking: Booking, provider_view: bool = False, customer: Optional[User] = None) -> dict:
    data = {
        "id": str(booking.id),
        "booking_number": booking.booking_number,
        "provider_id": str(booking.provider_id),
        "customer_id": str(booking.customer_id),
        "status": map_status_to_provider(booking.status) if provider_view else booking.status,
        "location_type": booking.location_type,
        "location_id": str(booking.location_id) if booking.location_id else None,
        "address": {
            "line1": booking.address_line1,
            "line2": booking.address_line2,
            "city": booking.address_city,
            "state": booking.address_state,
            "country": booking.address_country,
            "postal_code": booking.address_postal_code,
        } if booking.location_type == LocationType.AT_HOME.value else None,
        "scheduled_at": _iso(booking.scheduled_at),
        "current_stage": booking.current_stage,
        "booking_source": booking.booking_source,
        "subtotal_cents": booking.subtotal_cents,
        "discount_cents": booking.discount_cents,
        "discount_reason": booking.discount_reason,
        "tax_rate": booking.tax_rate,
        "tax_cents": booking.tax_cents,
        "tip_cents": booking.tip_cents,
        "travel_fee_cents": booking.travel_fee_cents,
        "service_fee_cents": booking.service_fee_cents,
        "total_cents": booking.total_cents,
        "total_paid_cents": booking.total_paid_cents,
        "refund_cents": booking.refund_cents,
        "currency": booking.currency,
        "payment_status": booking.payment_status,
        "special_requests": booking.special_requests,
        "loyalty_points_earned": booking.loyalty_points_earned,
        "completed_at": _iso(booking.completed_at),
        "cancelled_at": _iso(booking.cancelled_at),
        "cancellation_reason": booking.cancellation_reason,
        "cancelled_by": booking.cancelled_by,
        "version": booking.version,
        "created_at": _iso(booking.created_at),
        "updated_at": _iso(booking.updated_at),
        "services": [serialize_service(service) for service in booking.services],
    }
    if customer is not None:
        data["customer"] = {
            "id": str(customer.id),
            "full_name": customer.full_name,
            "email": customer.email,
            "phone": customer.phone,
        }
    return data


# ────────────────────────────────────────────────────────────────
# Provider operations
# ────────────────────────────────────────────────────────────────

async def create_provider_booking(
    session: AsyncSession,
    provider_ctx: ProviderContext,
    user_id: uuid.UUID,
    request: ProviderBookingCreate,
) -> dict:
    require_permission(provider_ctx, "create_appointments")
    settings = get_settings()

    provider = await session.get(Provider, provider_ctx.provider_id)
    if provider is None:
        raise not_found("Provider not found")

    await enforce_monthly_limit(session, provider)
    status = determine_booking_status(provider, request.status)

    if request.customer_id:
        customer = await session.get(User, request.customer_id)
        if customer is None:
            raise not_found("Customer not found")
    else:
        customer = await resolve_walk_in_customer(
            session, request.customer_name, request.customer_email, request.customer_phone
        )

    booking_number = await generate_booking_number(session, provider.id)
    tax_rate = effective_tax_rate(request.tax_rate, provider, settings)
    location_id = await resolve_location_id(session, provider.id, request.location_type, request.location_id)

    staff_id = (
        (request.services[0].staff_id if request.services else None)
        or request.team_member_id
        or request.staff_id
    )
    if staff_id and await get_staff_member(session, provider.id, staff_id) is None:
        raise validation_error("Staff member not found for this provider")

    lines = await _service_lines_for_request(
        session, provider.id, request, staff_id, settings.default_service_duration_minutes
    )
    services, start_at, end_at = build_service_schedule(
        request.scheduled_at,
        lines,
        default_duration=settings.default_service_duration_minutes,
        booking_buffer=settings.booking_buffer_minutes,
    )

    booking_source = request.booking_source or "walk_in"
    is_walk_in = booking_source == "walk_in"
    subtotal = request.subtotal_cents if request.subtotal_cents is not None else sum(line.price_cents for line in lines)
    taxable = max(0, subtotal - request.discount_cents)
    tax_cents = request.tax_cents if request.tax_cents is not None else round(taxable * tax_rate / 100)
    service_fee_percentage = 0.0 if is_walk_in else (request.service_fee_percentage or 0.0)
    if is_walk_in:
        service_fee_cents = 0
    elif request.service_fee_cents is not None:
        service_fee_cents = request.service_fee_cents
    else:
        service_fee_cents = round(subtotal * service_fee_percentage / 100)
    total_cents = request.total_cents
    if total_cents is None:
        total_cents = taxable + tax_cents + request.tip_cents + request.travel_fee_cents + service_fee_cents

    booking = Booking(
        id=uuid.uuid4(),
        booking_number=booking_number,
        provider_id=provider.id,
        customer_id=customer.id,
        status=status,
        location_type=request.location_type,
        location_id=location_id,
        address_line1=request.address_line1,
        address_line2=request.address_line2,
        address_city=request.address_city,
        address_state=request.address_state,
        address_country=request.address_country,
        address_postal_code=request.address_postal_code,
        scheduled_at=start_at,
        current_stage=stage_for_status(request.location_type, status, None),
        booking_source=booking_source,
        subtotal_cents=subtotal,
        discount_cents=request.discount_cents,
        discount_reason=request.discount_reason,
        tax_rate=tax_rate,
        tax_cents=tax_cents,
        tip_cents=request.tip_cents,
        travel_fee_cents=request.travel_fee_cents,
        service_fee_cents=service_fee_cents,
        service_fee_percentage=service_fee_percentage,
        total_cents=total_cents,
        currency=provider.currency or settings.default_currency,
        special_requests=request.special_requests,
    )

    path = await persist_booking(session, provider, booking, services, staff_id, start_at, end_at)

    add_booking_event(
        session,
        booking,
        "created",
        {"status": status, "booking_source": booking_source, "insert_path": path},
        created_by=user_id,
    )
    await log_audit(
        session,
        actor_user_id=str(user_id),
        action=AUDIT_BOOKING_CREATED,
        provider_id=provider.id,
        target_type="booking",
        target_id=str(booking.id),
        metadata={"booking_number": booking_number, "status": status},
    )
    await notifications.create_notification(
        session,
        customer.id,
        notifications.NEW_APPOINTMENT,
        "New appointment",
        f"Your appointment with {provider.business_name} is booked for {start_at.isoformat()}.",
        payload={"booking_id": str(booking.id), "booking_number": booking_number},
        link=f"/account-settings/bookings/{booking.id}",
    )
    await session.commit()

    logger.info(
        f"Provider {provider.id} created booking {booking_number} ({status}) for customer {customer.id}"
    )
    return serialize_booking(booking, provider_view=True, customer=customer)


def _check_concurrency_tokens(booking: Booking, patch: ProviderBookingUpdate, tolerance_seconds: int) -> None:
    if patch.version is not None and patch.version != booking.version:
        logger.warning(f"Version mismatch on booking {booking.id}: sent {patch.version}, stored {booking.version}")
        raise stale_booking()
    if patch.updated_at is not None:
        drift = abs((ensure_utc(patch.updated_at) - booking.updated_at).total_seconds())
        if drift > tolerance_seconds:
            logger.warning(f"updated_at mismatch on booking {booking.id}: drift {drift:.3f}s")
            raise stale_booking()


def _apply_status(booking: Booking, new_status: str, now: datetime, cancelled_by: str, reason: Optional[str]) -> None:
    booking.status = new_status
    if new_status == BookingStatus.COMPLETED.value:
        booking.completed_at = now
    elif new_status == BookingStatus.CANCELLED.value:
        booking.cancelled_at = now
        booking.cancelled_by = cancelled_by
        if reason:
            booking.cancellation_reason = reason
    booking.current_stage = stage_for_status(booking.location_type, new_status, booking.current_stage)


async def _apply_status_side_effects(session: AsyncSession, booking: Booking, new_status: str) -> int:
    """Award or reverse loyalty for a status transition. Returns points moved."""
    if new_status == BookingStatus.COMPLETED.value:
        return await award_points_for_completion(session, booking)
    if new_status == BookingStatus.CANCELLED.value:
        return await reverse_points_for_cancellation(session, booking)
    return 0


async def update_provider_booking(
    session: AsyncSession,
    provider_ctx: ProviderContext,
    user_id: uuid.UUID,
    booking_id: uuid.UUID,
    patch: ProviderBookingUpdate,
) -> dict:
    require_permission(provider_ctx, "edit_appointments")
    settings = get_settings()

    changes = patch.changed_fields()
    if not changes:
        raise validation_error("No updatable fields provided")

    booking = await get_booking_for_provider(session, provider_ctx.provider_id, booking_id)
    if booking is None:
        raise not_found("Booking not found")
    _check_concurrency_tokens(booking, patch, settings.optimistic_lock_tolerance_seconds)

    provider = await session.get(Provider, provider_ctx.provider_id)
    now = utcnow()
    events: list[tuple[str, dict]] = []
    notification_type = None

    old_status = booking.status
    new_status = map_status_to_database(patch.status) if "status" in changes and patch.status else None
    status_changed = new_status is not None and new_status != old_status

    current_staff = next((s.staff_id for s in booking.services if s.staff_id), None)
    staff_changed = "staff_id" in changes and patch.staff_id is not None and patch.staff_id != current_staff
    rescheduled = (
        "scheduled_at" in changes
        and patch.scheduled_at is not None
        and ensure_utc(patch.scheduled_at) != booking.scheduled_at
    )

    if staff_changed and await get_staff_member(session, provider_ctx.provider_id, patch.staff_id) is None:
        raise validation_error("Staff member not found for this provider")

    if rescheduled or staff_changed:
        delta = ensure_utc(patch.scheduled_at) - booking.scheduled_at if rescheduled else timedelta(0)
        target_staff = patch.staff_id if staff_changed else current_staff
        if booking.services:
            new_start = min(s.scheduled_start_at for s in booking.services) + delta
            new_end = max(s.scheduled_end_at for s in booking.services) + delta
        else:
            new_start = booking.scheduled_at + delta
            new_end = new_start + timedelta(minutes=settings.default_service_duration_minutes)
        new_end += timedelta(minutes=settings.booking_buffer_minutes)

        if target_staff and not can_override_double_booking(provider):
            conflict = await check_booking_conflict(
                session,
                provider_ctx.provider_id,
                target_staff,
                new_start,
                new_end,
                location_id=booking.location_id,
                exclude_booking_id=booking.id,
            )
            if conflict.has_conflict:
                raise slot_unavailable()

        if rescheduled:
            old_scheduled = booking.scheduled_at
            booking.scheduled_at = booking.scheduled_at + delta
            for service in booking.services:
                duration = service.scheduled_end_at - service.scheduled_start_at
                service.scheduled_start_at = service.scheduled_start_at + delta
                service.scheduled_end_at = service.scheduled_start_at + duration
            events.append(("rescheduled", {"from": _iso(old_scheduled), "to": _iso(booking.scheduled_at)}))
        if staff_changed:
            for service in booking.services:
                service.staff_id = patch.staff_id
            events.append((
                "staff_changed",
                {"from": str(current_staff) if current_staff else None, "to": str(patch.staff_id)},
            ))

    loyalty_points = 0
    if status_changed:
        _apply_status(booking, new_status, now, "provider", patch.cancellation_reason)
        loyalty_points = await _apply_status_side_effects(session, booking, new_status)
        event_type = EVENT_TYPE_FOR_STATUS.get(new_status)
        if event_type:
            events.append((event_type, {"from": old_status, "to": new_status}))

    if "current_stage" in changes and patch.current_stage:
        if not (booking.location_type == LocationType.AT_HOME.value and patch.current_stage == "client_arrived"):
            booking.current_stage = patch.current_stage

    other_changes = {}
    for field_name in ("special_requests", "discount_cents", "discount_reason", "tip_cents"):
        if field_name in changes:
            setattr(booking, field_name, changes[field_name])
            other_changes[field_name] = changes[field_name]
    if "discount_cents" in other_changes or "tip_cents" in other_changes:
        booking.total_cents = (
            max(0, booking.subtotal_cents - booking.discount_cents)
            + booking.tax_cents
            + booking.tip_cents
            + booking.travel_fee_cents
            + booking.service_fee_cents
        )
    if other_changes:
        events.append(("updated", {"fields": sorted(other_changes)}))

    booking.updated_at = now
    for event_type, data in events:
        add_booking_event(session, booking, event_type, data, created_by=user_id)

    if rescheduled:
        notification_type = notifications.BOOKING_RESCHEDULED
    elif status_changed:
        notification_type = notifications.BOOKING_STATUS_UPDATE
    elif staff_changed:
        notification_type = notifications.BOOKING_STAFF_CHANGED
    elif events:
        notification_type = notifications.BOOKING_UPDATE

    try:
        await session.flush()
    except StaleDataError:
        await session.rollback()
        logger.warning(f"Concurrent update detected on booking {booking_id}")
        raise stale_booking()

    if status_changed or rescheduled or staff_changed:
        await log_audit(
            session,
            actor_user_id=str(user_id),
            action=AUDIT_BOOKING_UPDATED,
            provider_id=provider_ctx.provider_id,
            target_type="booking",
            target_id=str(booking.id),
            metadata={
                "from_status": old_status,
                "to_status": booking.status,
                "rescheduled": rescheduled,
                "staff_changed": staff_changed,
                "loyalty_points": loyalty_points,
            },
        )
    if notification_type:
        await notifications.create_notification(
            session,
            booking.customer_id,
            notification_type,
            "Booking updated",
            f"Your booking {booking.booking_number} was updated.",
            payload={"booking_id": str(booking.id), "status": booking.status},
            link=f"/account-settings/bookings/{booking.id}",
        )
    await session.commit()

    logger.info(f"Booking {booking.booking_number} updated by {user_id}: {sorted(changes)}")
    return serialize_booking(booking, provider_view=True)


async def get_provider_booking(
    session: AsyncSession,
    provider_ctx: ProviderContext,
    booking_id: uuid.UUID,
) -> dict:
    require_permission(provider_ctx, "view_appointments")
    booking = await get_booking_for_provider(session, provider_ctx.provider_id, booking_id)
    if booking is None:
        raise not_found("Booking not found")
    customer = await session.get(User, booking.customer_id)
    return serialize_booking(booking, provider_view=True, customer=customer)


@dataclass
class BookingFilters:
    status: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    staff_id: Optional[uuid.UUID] = None
    search: Optional[str] = None
    provider_id: Optional[uuid.UUID] = None


def _apply_filters(stmt, filters: BookingFilters):
    statuses = parse_status_filter(filters.status)
    if statuses:
        stmt = stmt.where(Booking.status.in_(statuses))
    if filters.date_from:
        stmt = stmt.where(Booking.scheduled_at >= ensure_utc(filters.date_from))
    if filters.date_to:
        stmt = stmt.where(Booking.scheduled_at <= ensure_utc(filters.date_to))
    if filters.staff_id:
        stmt = stmt.where(
            Booking.id.in_(select(BookingService.booking_id).where(BookingService.staff_id == filters.staff_id))
        )
    if filters.provider_id:
        stmt = stmt.where(Booking.provider_id == filters.provider_id)
    if filters.search:
        term = f"%{filters.search.strip()}%"
        stmt = stmt.where(
            or_(
                Booking.booking_number.ilike(term),
                User.full_name.ilike(term),
                User.email.ilike(term),
                User.phone.ilike(term),
            )
        )
    return stmt


async def _paginate_bookings(
    session: AsyncSession,
    stmt,
    page: Optional[int],
    limit: Optional[int],
    provider_view: bool,
) -> dict:
    page, limit, offset = get_pagination_params(page, limit)
    total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
    result = await session.execute(
        stmt.order_by(Booking.scheduled_at.desc()).offset(offset).limit(limit)
    )
    items = [
        serialize_booking(booking, provider_view=provider_view, customer=customer)
        for booking, customer in result.all()
    ]
    return paginated_response(items, total or 0, page, limit)


async def list_provider_bookings(
    session: AsyncSession,
    provider_ctx: ProviderContext,
    filters: BookingFilters,
    page: Optional[int] = 1,
    limit: Optional[int] = 20,
) -> dict:
    require_permission(provider_ctx, "view_appointments")
    stmt = (
        select(Booking, User)
        .join(User, User.id == Booking.customer_id)
        .where(Booking.provider_id == provider_ctx.provider_id)
    )
    stmt = _apply_filters(stmt, filters)
    return await _paginate_bookings(session, stmt, page, limit, provider_view=True)


async def mark_booking_arrived(
    session: AsyncSession,
    provider_ctx: ProviderContext,
    user_id: uuid.UUID,
    booking_id: uuid.UUID,
) -> dict:
    settings = get_settings()
    booking = await get_booking_for_provider(session, provider_ctx.provider_id, booking_id)
    if booking is None:
        raise not_found("Booking not found")
    if booking.location_type != LocationType.AT_HOME.value:
        raise ApiError(400, ErrorCodes.INVALID_REQUEST, "Arrival can only be marked for at-home bookings")
    if booking.status != BookingStatus.CONFIRMED.value and booking.current_stage != "provider_on_way":
        raise ApiError(
            400,
            ErrorCodes.INVALID_STATUS,
            f"Cannot mark arrival for a booking with status {map_status_to_provider(booking.status)}",
        )

    now = utcnow()
    otp = None
    if settings.require_arrival_verification:
        otp = f"{secrets.randbelow(10 ** 6):06d}"
        booking.arrival_otp = otp
        booking.arrival_otp_expires_at = now + timedelta(minutes=settings.arrival_otp_ttl_minutes)
        booking.arrival_otp_verified = False
        add_booking_event(session, booking, "otp_sent", {"expires_at": _iso(booking.arrival_otp_expires_at)}, user_id)
    else:
        booking.current_stage = "provider_arrived"
        booking.arrival_otp_verified = True

    booking.updated_at = now
    add_booking_event(
        session,
        booking,
        "provider_arrived",
        {"verification_required": otp is not None},
        created_by=user_id,
    )
    await notifications.create_notification(
        session,
        booking.customer_id,
        notifications.PROVIDER_ARRIVED,
        "Your provider has arrived",
        f"Your provider has arrived for booking {booking.booking_number}.",
        payload={"booking_id": str(booking.id)},
    )
    await session.commit()

    logger.info(f"Provider arrival marked for booking {booking.booking_number} (otp={'yes' if otp else 'no'})")
    return {
        "booking": serialize_booking(booking, provider_view=True),
        "verification_required": otp is not None,
        "otp": otp,
    }


async def mark_booking_paid(
    session: AsyncSession,
    provider_ctx: ProviderContext,
    user_id: uuid.UUID,
    booking_id: uuid.UUID,
    request: MarkPaidRequest,
) -> dict:
    require_permission(provider_ctx, "process_payments")
    if request.payment_method not in PAYMENT_METHODS:
        raise validation_error(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")

    booking = await get_booking_for_provider(session, provider_ctx.provider_id, booking_id)
    if booking is None:
        raise not_found("Booking not found")

    remaining = booking.remaining_balance_cents
    if booking.payment_status == "paid" or remaining <= 0:
        raise ApiError(400, ErrorCodes.ALREADY_PAID, "This booking is already fully paid")

    amount = request.amount_cents if request.amount_cents is not None else remaining
    if amount <= 0:
        raise validation_error("Payment amount must be greater than zero")

    payment = BookingPayment(
        booking_id=booking.id,
        amount_cents=amount,
        payment_method=request.payment_method,
        payment_provider=PAYMENT_PROVIDER_FOR_METHOD.get(request.payment_method, "other"),
        status="completed",
        reference=request.reference,
        notes=request.notes,
        created_by=user_id,
    )
    session.add(payment)

    booking.total_paid_cents = (booking.total_paid_cents or 0) + amount
    booking.payment_status = "paid" if booking.total_paid_cents >= booking.total_cents else "partially_paid"
    if booking.location_type == LocationType.AT_SALON.value and booking.location_id is None:
        locations = await list_active_locations(session, provider_ctx.provider_id)
        if locations:
            booking.location_id = locations[0].id
    booking.updated_at = utcnow()

    add_booking_event(
        session,
        booking,
        "payment_received",
        {"amount_cents": amount, "payment_method": request.payment_method},
        created_by=user_id,
    )
    await log_audit(
        session,
        actor_user_id=str(user_id),
        action=AUDIT_PAYMENT_RECORDED,
        provider_id=provider_ctx.provider_id,
        target_type="booking",
        target_id=str(booking.id),
        metadata={"amount_cents": amount, "payment_method": request.payment_method},
    )
    await notifications.create_notification(
        session,
        booking.customer_id,
        notifications.PAYMENT_RECEIVED,
        "Payment received",
        f"We received your payment for booking {booking.booking_number}.",
        payload={"booking_id": str(booking.id), "amount_cents": amount},
    )
    await session.commit()

    logger.info(f"Recorded {amount} cent {request.payment_method} payment on booking {booking.booking_number}")
    return {
        "booking": serialize_booking(booking, provider_view=True),
        "payment": {
            "id": str(payment.id),
            "amount_cents": payment.amount_cents,
            "payment_method": payment.payment_method,
            "payment_provider": payment.payment_provider,
            "status": payment.status,
        },
    }


# ────────────────────────────────────────────────────────────────
# Customer operations
# ────────────────────────────────────────────────────────────────

async def cancel_customer_booking(
    session: AsyncSession,
    user_id: uuid.UUID,
    booking_id: uuid.UUID,
    reason: Optional[str] = None,
    version: Optional[int] = None,
) -> dict:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise not_found("Booking not found")
    if booking.customer_id != user_id:
        logger.warning(f"User {user_id} tried to cancel booking {booking_id} they do not own")
        raise ApiError(403, ErrorCodes.FORBIDDEN, "You can only cancel your own bookings")
    if booking.status == BookingStatus.CANCELLED.value:
        raise ApiError(400, ErrorCodes.ALREADY_CANCELLED, "This booking is already cancelled")
    if booking.status in (BookingStatus.COMPLETED.value, BookingStatus.NO_SHOW.value):
        raise ApiError(400, ErrorCodes.INVALID_STATUS, f"Cannot cancel a {booking.status} booking")

    now = utcnow()
    policy = await get_cancellation_policy(session, booking.provider_id)
    decision = evaluate_cancellation(policy, booking, now)
    if not decision.allowed:
        logger.warning(f"Cancellation blocked for booking {booking.booking_number}: {decision.reason}")
        raise ApiError(403, ErrorCodes.CANCELLATION_BLOCKED, decision.reason, details=decision.to_dict())
    if version is not None and version != booking.version:
        raise stale_booking()

    _apply_status(booking, BookingStatus.CANCELLED.value, now, "customer", reason or "Customer cancellation")
    booking.refund_cents = decision.refund_cents
    if decision.refund_cents > 0:
        booking.payment_status = "refunded"
    booking.updated_at = now

    reversed_points = await reverse_points_for_cancellation(session, booking)
    add_booking_event(
        session,
        booking,
        "cancelled",
        {
            "cancelled_by": "customer",
            "policy_applied": policy.late_cancellation_type if decision.is_late else None,
            "grace_window_used": decision.within_grace_window,
            "refund_cents": decision.refund_cents,
        },
        created_by=user_id,
    )

    provider = await session.get(Provider, booking.provider_id)
    try:
        await session.flush()
    except StaleDataError:
        await session.rollback()
        raise stale_booking()

    await notifications.create_notification(
        session,
        provider.owner_user_id if provider else None,
        notifications.BOOKING_CANCELLED,
        "Booking cancelled",
        f"Booking {booking.booking_number} was cancelled by the customer.",
        payload={"booking_id": str(booking.id), "refund_cents": decision.refund_cents},
    )
    await session.commit()

    logger.info(
        f"Customer {user_id} cancelled booking {booking.booking_number} "
        f"(late={decision.is_late}, refund={decision.refund_cents}, loyalty_reversed={reversed_points})"
    )
    return {
        "booking": serialize_booking(booking),
        "refund_info": decision.to_dict(),
        "refund_amount_cents": decision.refund_cents,
    }


async def list_customer_bookings(
    session: AsyncSession,
    user_id: uuid.UUID,
    status: Optional[str] = None,
    page: Optional[int] = 1,
    limit: Optional[int] = 20,
) -> dict:
    now = utcnow()
    stmt = (
        select(Booking, User)
        .join(User, User.id == Booking.customer_id)
        .where(Booking.customer_id == user_id)
    )
    if status == "upcoming":
        stmt = stmt.where(Booking.status.in_(ACTIVE_BOOKING_STATUSES), Booking.scheduled_at >= now)
    elif status == "past":
        stmt = stmt.where(
            Booking.status != BookingStatus.CANCELLED.value,
            or_(Booking.status == BookingStatus.COMPLETED.value, Booking.scheduled_at < now),
        )
    elif status == "cancelled":
        stmt = stmt.where(Booking.status == BookingStatus.CANCELLED.value)
    elif status:
        stmt = stmt.where(Booking.status == status)
    return await _paginate_bookings(session, stmt, page, limit, provider_view=False)


async def get_customer_booking(session: AsyncSession, user_id: uuid.UUID, booking_id: uuid.UUID) -> dict:
    booking = await session.get(Booking, booking_id)
    if booking is None or booking.customer_id != user_id:
        raise not_found("Booking not found")
    return serialize_booking(booking)


# ────────────────────────────────────────────────────────────────
# Admin operations
# ────────────────────────────────────────────────────────────────

async def _bulk_transition(
    session: AsyncSession,
    actor_user_id: uuid.UUID,
    booking_ids: Sequence[uuid.UUID],
    action: str,
    provider_id: Optional[uuid.UUID] = None,
) -> dict:
    """
    Cancel or complete many bookings, one SAVEPOINT each.

    With a provider_id, bookings of other providers are reported as not found.
    """
    if action not in ("cancel", "complete"):
        raise validation_error("action must be 'cancel' or 'complete'")
    if not booking_ids:
        raise validation_error("booking_ids must not be empty")
    if len(booking_ids) > BULK_MAX_IDS:
        raise validation_error(f"At most {BULK_MAX_IDS} bookings can be updated at once")

    target = BookingStatus.CANCELLED.value if action == "cancel" else BookingStatus.COMPLETED.value
    if provider_id is None:
        cancelled_by, reason = "admin", "Cancelled by platform admin"
    else:
        cancelled_by, reason = "provider", "Cancelled by provider"
    now = utcnow()
    updated: list[str] = []
    failed: list[dict] = []
    loyalty_reversed = 0

    for booking_id in dict.fromkeys(booking_ids):
        booking = await session.get(Booking, booking_id)
        if booking is None or (provider_id is not None and booking.provider_id != provider_id):
            failed.append({"id": str(booking_id), "reason": "Booking not found"})
            continue
        if booking.status == target:
            failed.append({"id": str(booking_id), "reason": f"Booking is already {target}"})
            continue
        if target == BookingStatus.COMPLETED.value and booking.status == BookingStatus.CANCELLED.value:
            failed.append({"id": str(booking_id), "reason": "Cannot complete a cancelled booking"})
            continue

        old_status = booking.status
        try:
            async with session.begin_nested():
                _apply_status(booking, target, now, cancelled_by, reason)
                booking.updated_at = now
                points = await _apply_status_side_effects(session, booking, target)
                add_booking_event(
                    session,
                    booking,
                    EVENT_TYPE_FOR_STATUS[target],
                    {"from": old_status, "to": target, "bulk": True},
                    created_by=actor_user_id,
                )
        except StaleDataError:
            failed.append({"id": str(booking_id), "reason": "Booking was modified concurrently"})
            continue

        if target == BookingStatus.CANCELLED.value:
            loyalty_reversed += points
        updated.append(str(booking_id))

    await log_audit(
        session,
        actor_user_id=str(actor_user_id),
        action=AUDIT_BOOKING_BULK_CANCELLED if action == "cancel" else AUDIT_BOOKING_BULK_COMPLETED,
        provider_id=provider_id,
        target_type="booking",
        metadata={"updated": updated, "failed": len(failed), "loyalty_reversed": loyalty_reversed},
    )
    await session.commit()
    return {"updated": updated, "failed": failed, "loyalty_reversed": loyalty_reversed}


async def bulk_update_bookings(
    session: AsyncSession,
    admin_ctx: RequestContext,
    booking_ids: Sequence[uuid.UUID],
    action: str,
) -> dict:
    result = await _bulk_transition(session, admin_ctx.user_uuid, booking_ids, action)
    logger.info(
        f"Admin {admin_ctx.user_id} bulk {action}: "
        f"{len(result['updated'])} updated, {len(result['failed'])} failed"
    )
    return result


async def bulk_update_provider_bookings(
    session: AsyncSession,
    provider_ctx: ProviderContext,
    booking_ids: Sequence[uuid.UUID],
    action: str,
) -> dict:
    require_permission(provider_ctx, "edit_appointments")
    result = await _bulk_transition(
        session, provider_ctx.user_id, booking_ids, action, provider_id=provider_ctx.provider_id
    )
    logger.info(
        f"Provider {provider_ctx.provider_id} user {provider_ctx.user_id} bulk {action}: "
        f"{len(result['updated'])} updated, {len(result['failed'])} failed"
    )
    return result


async def list_admin_bookings(
    session: AsyncSession,
    filters: BookingFilters,
    page: Optional[int] = 1,
    limit: Optional[int] = 20,
) -> dict:
    stmt = select(Booking, User).join(User, User.id == Booking.customer_id)
    stmt = _apply_filters(stmt, filters)
    return await _paginate_bookings(session, stmt, page, limit, provider_view=False)


async def get_admin_booking(session: AsyncSession, booking_id: uuid.UUID) -> dict:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise not_found("Booking not found")
    customer = await session.get(User, booking.customer_id)
    return serialize_booking(booking, customer=customer)
