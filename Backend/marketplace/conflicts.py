"""
Slot conflict detection.

A staff member's time is occupied by the services of their active bookings
(including each service's buffer), by provider time blocks and, during public
checkout, by other customers' active holds.

Intervals are half-open: touching intervals never conflict.
"""

import logging
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_status import ACTIVE_BOOKING_STATUSES
from .core.db import ensure_utc
from .models import Booking, BookingHold, BookingService, HoldStatus, Provider, ProviderStaff, TimeBlock


logger = logging.getLogger(__name__)

# Upper bound on a single service buffer, used to widen the SQL prefilter.
MAX_BUFFER_LOOKBACK = timedelta(hours=24)


@dataclass
class ConflictResult:
    has_conflict: bool = False
    booking_ids: list[uuid.UUID] = field(default_factory=list)
    time_block_ids: list[uuid.UUID] = field(default_factory=list)
    hold_ids: list[uuid.UUID] = field(default_factory=list)


def overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


async def check_booking_conflict(
    session: AsyncSession,
    provider_id: uuid.UUID,
    staff_id: uuid.UUID,
    start_at: datetime,
    end_at: datetime,
    location_id: Optional[uuid.UUID] = None,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> ConflictResult:
    """
    Check a staff member's bookings and the provider's time blocks for overlap.

    Existing booking services occupy [scheduled_start_at, scheduled_end_at + buffer).
    A time block applies when its staff_id is null or matches, and its
    location_id is null or matches the requested location.
    """
    start_at = ensure_utc(start_at)
    end_at = ensure_utc(end_at)
    result = ConflictResult()

    stmt = (
        select(BookingService)
        .join(Booking, Booking.id == BookingService.booking_id)
        .where(
            Booking.provider_id == provider_id,
            BookingService.staff_id == staff_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            BookingService.scheduled_start_at < end_at,
            BookingService.scheduled_end_at > start_at - MAX_BUFFER_LOOKBACK,
        )
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.id != exclude_booking_id)

    services = (await session.execute(stmt)).scalars().all()
    for service in services:
        occupied_end = service.scheduled_end_at + timedelta(minutes=service.buffer_minutes or 0)
        if overlap(start_at, end_at, service.scheduled_start_at, occupied_end):
            if service.booking_id not in result.booking_ids:
                result.booking_ids.append(service.booking_id)

    block_stmt = select(TimeBlock).where(
        TimeBlock.provider_id == provider_id,
        TimeBlock.is_active.is_(True),
        TimeBlock.start_at < end_at,
        TimeBlock.end_at > start_at,
        or_(TimeBlock.staff_id.is_(None), TimeBlock.staff_id == staff_id),
    )
    if location_id:
        block_stmt = block_stmt.where(
            or_(TimeBlock.location_id.is_(None), TimeBlock.location_id == location_id)
        )
    blocks = (await session.execute(block_stmt)).scalars().all()
    result.time_block_ids = [block.id for block in blocks]

    result.has_conflict = bool(result.booking_ids or result.time_block_ids)
    if result.has_conflict:
        logger.warning(
            f"Slot conflict for staff {staff_id} at provider {provider_id} "
            f"({start_at.isoformat()} - {end_at.isoformat()}): "
            f"{len(result.booking_ids)} bookings, {len(result.time_block_ids)} time blocks"
        )
    return result


async def check_hold_conflict(
    session: AsyncSession,
    provider_id: uuid.UUID,
    staff_id: Optional[uuid.UUID],
    start_at: datetime,
    end_at: datetime,
    now: datetime,
    exclude_hold_id: Optional[uuid.UUID] = None,
) -> ConflictResult:
    """
    Check active, unexpired holds that overlap the interval.

    With a staff id only that staff member's holds count. Without one
    ("anyone" mode) every hold of the provider counts.
    """
    stmt = select(BookingHold.id).where(
        BookingHold.provider_id == provider_id,
        BookingHold.hold_status == HoldStatus.ACTIVE.value,
        BookingHold.expires_at > now,
        BookingHold.start_at < ensure_utc(end_at),
        BookingHold.end_at > ensure_utc(start_at),
    )
    if staff_id:
        stmt = stmt.where(BookingHold.staff_id == staff_id)
    if exclude_hold_id:
        stmt = stmt.where(BookingHold.id != exclude_hold_id)

    hold_ids = list((await session.execute(stmt)).scalars().all())
    return ConflictResult(has_conflict=bool(hold_ids), hold_ids=hold_ids)


def can_override_double_booking(provider: Optional[Provider]) -> bool:
    return bool(provider and provider.allow_double_booking_override)


def _advisory_lock_key(staff_id: uuid.UUID) -> int:
    # pg_advisory_xact_lock takes a signed 64-bit key.
    return zlib.crc32(staff_id.bytes)


async def lock_staff_schedule(session: AsyncSession, staff_id: uuid.UUID) -> None:
    """
    Serialize booking inserts for one staff member inside the current transaction.

    Row lock on provider_staff, plus a transaction-scoped advisory lock on
    PostgreSQL. Both are released on commit or rollback.
    """
    await session.execute(
        select(ProviderStaff.id).where(ProviderStaff.id == staff_id).with_for_update()
    )
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        await session.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": _advisory_lock_key(staff_id)},
        )
    logger.debug(f"Locked schedule for staff {staff_id}")
