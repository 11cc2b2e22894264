"""
Slot availability.

Turns a staff member's working window, existing booking services, active
holds and time blocks into a list of candidate start times, each flagged
available or not with the reason it was rejected.

Booking services are split into segments. The provider is busy during the
service, its buffer and the finishing step, but free while the client is
processing (e.g. colour developing).
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_status import ACTIVE_BOOKING_STATUSES
from .conflicts import MAX_BUFFER_LOOKBACK, overlap
from .core.config import get_settings
from .models import (
    Booking,
    BookingHold,
    BookingService,
    HoldStatus,
    LocationType,
    Offering,
    Provider,
    ProviderStaff,
    TimeBlock,
)


logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class Segment:
    start: datetime
    end: datetime
    blocked: bool
    kind: str


@dataclass
class BusyInterval:
    """Anything that occupies a staff member but is not a booking service (e.g. a hold)."""
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    buffer_minutes: int = 0
    processing_minutes: int = 0
    finishing_minutes: int = 0


@dataclass
class SlotResult:
    time: str
    available: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"time": self.time, "available": self.available}
        if self.reason:
            data["reason"] = self.reason
        return data


# ────────────────────────────────────────────────────────────────
# Pure slot calculation
# ────────────────────────────────────────────────────────────────

def calculate_booking_segments(service) -> list[Segment]:
    """Split a booked service into service, buffer, processing and finishing segments."""
    service_start = service.scheduled_start_at
    service_end = service.scheduled_end_at
    buffer = timedelta(minutes=service.buffer_minutes or 0)
    processing = timedelta(minutes=service.processing_minutes or 0)
    finishing = timedelta(minutes=service.finishing_minutes or 0)

    segments = [Segment(service_start, service_end, True, "service")]
    if buffer:
        segments.append(Segment(service_end, service_end + buffer, True, "buffer"))
    if processing:
        start = service_end + buffer
        segments.append(Segment(start, start + processing, False, "processing"))
    if finishing:
        start = service_end + buffer + processing
        segments.append(Segment(start, start + finishing, True, "finishing"))
    return segments


def generate_time_slots(work_start: time, work_end: time, interval: int = 15) -> list[str]:
    """HH:MM start times from work_start (inclusive) to work_end (exclusive)."""
    if interval <= 0:
        raise ValueError("Slot interval must be positive")
    start_minutes = work_start.hour * 60 + work_start.minute
    end_minutes = work_end.hour * 60 + work_end.minute
    return [
        f"{minutes // 60:02d}:{minutes % 60:02d}"
        for minutes in range(start_minutes, end_minutes, interval)
    ]


def _minutes_of(value: datetime, zone: ZoneInfo) -> int:
    local = value.astimezone(zone)
    return local.hour * 60 + local.minute


def apply_gap_avoidance(
    slots: list[SlotResult],
    bookings: Sequence,
    work_start: time,
    zone: ZoneInfo,
) -> list[SlotResult]:
    """
    Keep only available slots that sit against the edges of the schedule.

    With no bookings that is the first and last available slot of the day.
    Otherwise it is the slot 15 minutes before each booking, the slot right
    after each booking's buffer, and the start of the working window. Other
    available slots are flagged with a gap reason.
    """
    available = [slot.time for slot in slots if slot.available]
    if not available:
        return slots

    keep = {f"{work_start.hour:02d}:{work_start.minute:02d}"}
    if not bookings:
        keep.add(available[-1])
    else:
        for booking in bookings:
            before = _minutes_of(booking.scheduled_start_at, zone) - 15
            after = _minutes_of(booking.scheduled_end_at, zone) + (booking.buffer_minutes or 0)
            keep.add(f"{before // 60:02d}:{before % 60:02d}")
            keep.add(f"{after // 60:02d}:{after % 60:02d}")

    return [
        slot if not slot.available or slot.time in keep
        else SlotResult(slot.time, False, "Leaves a gap in the schedule")
        for slot in slots
    ]


def calculate_available_slots(
    day: date,
    tz: str,
    duration: int,
    work_start: Optional[time],
    work_end: Optional[time],
    bookings: Iterable,
    time_blocks: Iterable,
    slot_interval: int = 15,
    travel_buffer: int = 0,
    work_hours_enabled: bool = True,
    avoid_gaps: bool = False,
) -> list[SlotResult]:
    """
    Flag every candidate start time of a day.

    Checks run in order: working window, booked segments, time blocks.
    When work hours are disabled the default business window is used.
    With avoid_gaps only slots adjacent to existing bookings stay open.
    """
    if not work_hours_enabled or work_start is None or work_end is None:
        work_start = settings.default_work_start_time
        work_end = settings.default_work_end_time
        window_reason = "Extends beyond default hours"
    else:
        window_reason = "Extends beyond work hours"

    zone = ZoneInfo(tz)
    bookings = list(bookings)
    blocked_segments = [
        segment
        for booking in bookings
        for segment in calculate_booking_segments(booking)
        if segment.blocked
    ]
    blocks = list(time_blocks)
    work_end_at = datetime.combine(day, work_end, tzinfo=zone)
    occupied = timedelta(minutes=duration + travel_buffer)

    results = []
    for slot_time in generate_time_slots(work_start, work_end, slot_interval):
        hour, minute = map(int, slot_time.split(":"))
        slot_start = datetime.combine(day, time(hour, minute), tzinfo=zone)
        slot_end = slot_start + occupied

        if slot_end > work_end_at:
            results.append(SlotResult(slot_time, False, window_reason))
        elif any(overlap(slot_start, slot_end, seg.start, seg.end) for seg in blocked_segments):
            results.append(SlotResult(slot_time, False, "Conflicts with existing booking"))
        elif any(overlap(slot_start, slot_end, block.start_at, block.end_at) for block in blocks):
            results.append(SlotResult(slot_time, False, "Time block"))
        else:
            results.append(SlotResult(slot_time, True))

    if avoid_gaps:
        return apply_gap_avoidance(results, bookings, work_start, zone)
    return results


# ────────────────────────────────────────────────────────────────
# Database-backed availability
# ────────────────────────────────────────────────────────────────

def day_bounds_utc(day: date, tz: str) -> tuple[datetime, datetime]:
    zone = ZoneInfo(tz)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


async def get_provider_availability(
    session: AsyncSession,
    provider: Provider,
    day: date,
    offering: Offering,
    staff_id: Optional[uuid.UUID] = None,
    location_type: str = LocationType.AT_SALON.value,
    now: Optional[datetime] = None,
    avoid_gaps: bool = False,
) -> list[dict]:
    """
    Per-staff slot lists for one offering on one day (provider's timezone).

    A staff member's active holds block their interval the same way bookings
    do. The slot span is the offering duration plus its own buffer. At-home
    requests add the travel buffer to each slot.
    """
    now = now or datetime.now(timezone.utc)
    day_start, day_end = day_bounds_utc(day, provider.timezone)

    staff_stmt = select(ProviderStaff).where(
        ProviderStaff.provider_id == provider.id,
        ProviderStaff.is_active.is_(True),
    )
    if staff_id:
        staff_stmt = staff_stmt.where(ProviderStaff.id == staff_id)
    staff_members: Sequence[ProviderStaff] = (
        await session.execute(staff_stmt.order_by(ProviderStaff.name))
    ).scalars().all()
    if not staff_members:
        return []
    staff_ids = [member.id for member in staff_members]

    services = (
        await session.execute(
            select(BookingService)
            .join(Booking, Booking.id == BookingService.booking_id)
            .where(
                Booking.provider_id == provider.id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                BookingService.staff_id.in_(staff_ids),
                BookingService.scheduled_start_at < day_end,
                BookingService.scheduled_end_at > day_start - MAX_BUFFER_LOOKBACK,
            )
        )
    ).scalars().all()

    holds = (
        await session.execute(
            select(BookingHold).where(
                BookingHold.provider_id == provider.id,
                BookingHold.hold_status == HoldStatus.ACTIVE.value,
                BookingHold.expires_at > now,
                BookingHold.start_at < day_end,
                BookingHold.end_at > day_start,
            )
        )
    ).scalars().all()

    blocks = (
        await session.execute(
            select(TimeBlock).where(
                TimeBlock.provider_id == provider.id,
                TimeBlock.is_active.is_(True),
                TimeBlock.start_at < day_end,
                TimeBlock.end_at > day_start,
                or_(TimeBlock.staff_id.is_(None), TimeBlock.staff_id.in_(staff_ids)),
            )
        )
    ).scalars().all()

    duration = offering.duration_minutes + (offering.buffer_minutes or 0)
    travel_buffer = settings.travel_buffer_minutes if location_type == LocationType.AT_HOME.value else 0

    availability = []
    for member in staff_members:
        work_hours_enabled = member.work_start is not None and member.work_end is not None
        if work_hours_enabled and day.weekday() not in member.working_days_list:
            slots: list[SlotResult] = []
        else:
            busy = [service for service in services if service.staff_id == member.id]
            busy.extend(
                BusyInterval(hold.start_at, hold.end_at)
                for hold in holds
                if hold.staff_id == member.id
            )
            slots = calculate_available_slots(
                day=day,
                tz=provider.timezone,
                duration=duration,
                work_start=member.work_start,
                work_end=member.work_end,
                bookings=busy,
                time_blocks=[b for b in blocks if b.staff_id is None or b.staff_id == member.id],
                slot_interval=settings.slot_interval_minutes,
                travel_buffer=travel_buffer,
                work_hours_enabled=work_hours_enabled,
                avoid_gaps=avoid_gaps,
            )
        availability.append({
            "staff_id": str(member.id),
            "staff_name": member.name,
            "work_hours_enabled": work_hours_enabled,
            "slots": [slot.to_dict() for slot in slots],
        })

    logger.info(
        f"Availability for provider {provider.id} on {day.isoformat()}: "
        f"{len(staff_members)} staff, {len(services)} services, {len(holds)} holds, {len(blocks)} blocks"
    )
    return availability
