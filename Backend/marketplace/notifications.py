"""
In-app notification rows.

Notifications are best effort: a failed insert is logged and rolled back to a
savepoint so the booking transaction that triggered it still commits.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Notification


logger = logging.getLogger(__name__)

NEW_APPOINTMENT = "new_appointment"
BOOKING_RESCHEDULED = "booking_rescheduled"
BOOKING_STATUS_UPDATE = "booking_status_update"
BOOKING_STAFF_CHANGED = "booking_staff_changed"
BOOKING_UPDATE = "booking_update"
BOOKING_CANCELLED = "booking_cancelled"
PAYMENT_RECEIVED = "payment_received"
PROVIDER_ARRIVED = "provider_arrived"


async def create_notification(
    session: AsyncSession,
    user_id: Optional[uuid.UUID],
    type: str,
    title: str,
    message: str,
    payload: Optional[dict] = None,
    link: Optional[str] = None,
) -> Optional[Notification]:
    if not user_id:
        return None
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        payload=payload,
        link=link,
    )
    try:
        async with session.begin_nested():
            session.add(notification)
    except SQLAlchemyError as e:
        logger.error(f"Failed to create {type} notification for user {user_id}: {e}")
        return None
    logger.debug(f"Notification {type} queued for user {user_id}")
    return notification
