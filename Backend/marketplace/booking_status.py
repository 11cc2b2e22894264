"""
Booking status vocabulary.

The provider portal speaks booked/started/completed/cancelled/no_show while
the database stores pending/confirmed/in_progress/completed/cancelled/no_show.
"""

from typing import Optional

from .models import BookingStatus, LocationType


_TO_DATABASE = {
    "booked": BookingStatus.CONFIRMED.value,
    "started": BookingStatus.IN_PROGRESS.value,
    "completed": BookingStatus.COMPLETED.value,
    "cancelled": BookingStatus.CANCELLED.value,
    "no_show": BookingStatus.NO_SHOW.value,
    # Database values passed directly
    "pending": BookingStatus.PENDING.value,
    "confirmed": BookingStatus.CONFIRMED.value,
    "in_progress": BookingStatus.IN_PROGRESS.value,
}

_TO_PROVIDER = {
    BookingStatus.CONFIRMED.value: "booked",
    BookingStatus.IN_PROGRESS.value: "started",
}

ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.IN_PROGRESS.value,
)

# Booking event written when a booking enters a status.
EVENT_TYPE_FOR_STATUS = {
    BookingStatus.CONFIRMED.value: "confirmed",
    BookingStatus.IN_PROGRESS.value: "service_started",
    BookingStatus.COMPLETED.value: "service_completed",
    BookingStatus.CANCELLED.value: "cancelled",
}

_AT_HOME_STAGE_FOR_STATUS = {
    BookingStatus.CONFIRMED.value: "confirmed",
    BookingStatus.IN_PROGRESS.value: "service_started",
    BookingStatus.COMPLETED.value: "service_completed",
    BookingStatus.CANCELLED.value: None,
}

_UNSET = object()


def map_status_to_database(value: Optional[str]) -> str:
    """Translate a portal status to the stored status; unknown values become confirmed."""
    return _TO_DATABASE.get((value or "").strip().lower(), BookingStatus.CONFIRMED.value)


def map_status_to_provider(db_status: str) -> str:
    return _TO_PROVIDER.get(db_status, db_status)


def parse_status_filter(raw: Optional[str]) -> list[str]:
    """Parse a comma separated status filter into unique database statuses."""
    if not raw:
        return []
    statuses: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        mapped = map_status_to_database(part)
        if mapped not in statuses:
            statuses.append(mapped)
    return statuses


def stage_for_status(location_type: str, status: str, current_stage: Optional[str]) -> Optional[str]:
    """
    Stage an at-home booking moves to when its status changes.

    At-salon bookings and statuses without a mapped stage keep current_stage.
    """
    if location_type != LocationType.AT_HOME.value:
        return current_stage
    stage = _AT_HOME_STAGE_FOR_STATUS.get(status, _UNSET)
    if stage is _UNSET:
        return current_stage
    return stage
