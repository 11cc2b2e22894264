"""Customer cancellation policy evaluation."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .models import Booking, CancellationPolicy


logger = logging.getLogger(__name__)

FULL_REFUND = "full_refund"
PARTIAL_REFUND = "partial_refund"
NO_REFUND = "no_refund"


@dataclass
class CancellationDecision:
    allowed: bool
    reason: str
    is_late: bool = False
    within_grace_window: bool = False
    refund_cents: int = 0

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "is_late": self.is_late,
            "within_grace_window": self.within_grace_window,
            "refund_cents": self.refund_cents,
        }


def default_policy(provider_id: Optional[uuid.UUID] = None) -> CancellationPolicy:
    settings = get_settings()
    return CancellationPolicy(
        provider_id=provider_id,
        hours_before_cutoff=settings.default_cancellation_hours,
        grace_window_minutes=settings.default_cancellation_grace_minutes,
        late_cancellation_type=NO_REFUND,
        partial_refund_percentage=50,
        allow_late_cancellation=True,
    )


async def get_cancellation_policy(session: AsyncSession, provider_id: uuid.UUID) -> CancellationPolicy:
    result = await session.execute(
        select(CancellationPolicy).where(CancellationPolicy.provider_id == provider_id)
    )
    policy = result.scalar_one_or_none()
    if policy is None:
        logger.debug(f"No cancellation policy for provider {provider_id}, using default")
        return default_policy(provider_id)
    return policy


def evaluate_cancellation(policy: CancellationPolicy, booking: Booking, now: datetime) -> CancellationDecision:
    paid = booking.total_paid_cents or 0

    if now >= booking.scheduled_at:
        return CancellationDecision(False, "Booking has already started and can no longer be cancelled")

    grace_end = booking.created_at + timedelta(minutes=policy.grace_window_minutes or 0)
    if now <= grace_end:
        return CancellationDecision(
            True,
            "Cancelled within the grace window",
            within_grace_window=True,
            refund_cents=paid,
        )

    cutoff = booking.scheduled_at - timedelta(hours=policy.hours_before_cutoff or 0)
    if now < cutoff:
        return CancellationDecision(True, "Cancelled before the cancellation cutoff", refund_cents=paid)

    if not policy.allow_late_cancellation:
        return CancellationDecision(
            False,
            f"Cancellations are not allowed within {policy.hours_before_cutoff} hours of the appointment",
            is_late=True,
        )

    if policy.late_cancellation_type == FULL_REFUND:
        refund = paid
    elif policy.late_cancellation_type == PARTIAL_REFUND:
        refund = paid * (policy.partial_refund_percentage or 0) // 100
    else:
        refund = 0
    return CancellationDecision(
        True,
        f"Late cancellation ({policy.late_cancellation_type})",
        is_late=True,
        refund_cents=refund,
    )
