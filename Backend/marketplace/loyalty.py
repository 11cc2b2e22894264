"""
Loyalty point bookkeeping.

Points are an append-only ledger of LoyaltyPointTransaction rows. Completing a
booking earns points once; cancelling a booking that earned points writes a
single reversing "redeemed" row. Balances are derived from the ledger.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Booking, LoyaltyPointTransaction, LoyaltyRule, LoyaltyTransactionType


logger = logging.getLogger(__name__)


@dataclass
class EffectiveLoyaltyRule:
    points_per_currency_unit: float = 1.0
    redemption_rate: float = 10.0
    min_redemption_points: int = 50
    max_redemption_percentage: float = 50.0
    expiry_days: int = 365
    source: str = "default"

    def to_dict(self) -> dict:
        return {
            "points_per_currency_unit": self.points_per_currency_unit,
            "redemption_rate": self.redemption_rate,
            "min_redemption_points": self.min_redemption_points,
            "max_redemption_percentage": self.max_redemption_percentage,
            "expiry_days": self.expiry_days,
            "source": self.source,
        }


def _from_row(rule: LoyaltyRule, source: str) -> EffectiveLoyaltyRule:
    return EffectiveLoyaltyRule(
        points_per_currency_unit=rule.points_per_currency_unit,
        redemption_rate=rule.redemption_rate,
        min_redemption_points=rule.min_redemption_points,
        max_redemption_percentage=rule.max_redemption_percentage,
        expiry_days=rule.expiry_days,
        source=source,
    )


async def get_loyalty_rule(session: AsyncSession, provider_id: Optional[uuid.UUID]) -> EffectiveLoyaltyRule:
    """Provider rule, else platform rule, else built-in defaults."""
    if provider_id:
        result = await session.execute(
            select(LoyaltyRule)
            .where(LoyaltyRule.provider_id == provider_id, LoyaltyRule.is_active.is_(True))
            .order_by(LoyaltyRule.created_at.desc())
            .limit(1)
        )
        rule = result.scalar_one_or_none()
        if rule:
            return _from_row(rule, "provider")

    result = await session.execute(
        select(LoyaltyRule)
        .where(LoyaltyRule.provider_id.is_(None), LoyaltyRule.is_active.is_(True))
        .order_by(LoyaltyRule.created_at.desc())
        .limit(1)
    )
    rule = result.scalar_one_or_none()
    if rule:
        return _from_row(rule, "platform")
    return EffectiveLoyaltyRule()


async def _transaction_exists(
    session: AsyncSession,
    booking_id: uuid.UUID,
    transaction_type: str,
    description_prefix: Optional[str] = None,
) -> bool:
    stmt = select(LoyaltyPointTransaction.id).where(
        LoyaltyPointTransaction.booking_id == booking_id,
        LoyaltyPointTransaction.transaction_type == transaction_type,
    )
    if description_prefix:
        stmt = stmt.where(LoyaltyPointTransaction.description.like(f"{description_prefix}%"))
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none() is not None


async def award_points_for_completion(
    session: AsyncSession,
    booking: Booking,
    now: Optional[datetime] = None,
) -> int:
    """Award points for a completed booking. Returns the points awarded (0 if none)."""
    if not booking.subtotal_cents or booking.subtotal_cents <= 0:
        return 0
    if await _transaction_exists(session, booking.id, LoyaltyTransactionType.EARNED.value):
        logger.debug(f"Loyalty already awarded for booking {booking.id}")
        return 0

    rule = await get_loyalty_rule(session, booking.provider_id)
    points = math.floor((booking.subtotal_cents / 100) * rule.points_per_currency_unit)
    if points <= 0:
        return 0

    now = now or datetime.now(timezone.utc)
    session.add(
        LoyaltyPointTransaction(
            user_id=booking.customer_id,
            booking_id=booking.id,
            points=points,
            transaction_type=LoyaltyTransactionType.EARNED.value,
            description=f"Earned from booking {booking.booking_number}",
            expires_at=now + timedelta(days=rule.expiry_days),
        )
    )
    booking.loyalty_points_earned = points
    await session.flush()
    logger.info(f"Awarded {points} loyalty points to {booking.customer_id} for booking {booking.booking_number}")
    return points


REVERSAL_PREFIX = "Reversal: booking"


async def reverse_points_for_cancellation(session: AsyncSession, booking: Booking) -> int:
    """Reverse points earned by a booking. Idempotent; returns the points reversed."""
    points = booking.loyalty_points_earned or 0
    if points <= 0:
        return 0
    if not await _transaction_exists(session, booking.id, LoyaltyTransactionType.EARNED.value):
        return 0
    if await _transaction_exists(
        session, booking.id, LoyaltyTransactionType.REDEEMED.value, REVERSAL_PREFIX
    ):
        logger.debug(f"Loyalty already reversed for booking {booking.id}")
        return 0

    session.add(
        LoyaltyPointTransaction(
            user_id=booking.customer_id,
            booking_id=booking.id,
            points=points,
            transaction_type=LoyaltyTransactionType.REDEEMED.value,
            description=f"{REVERSAL_PREFIX} {booking.booking_number} cancelled",
        )
    )
    await session.flush()
    logger.info(f"Reversed {points} loyalty points for cancelled booking {booking.booking_number}")
    return points


async def get_points_balance(
    session: AsyncSession,
    user_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> int:
    """Unexpired earned points minus redeemed and expired, floored at zero."""
    now = now or datetime.now(timezone.utc)

    earned = await session.scalar(
        select(func.coalesce(func.sum(LoyaltyPointTransaction.points), 0)).where(
            LoyaltyPointTransaction.user_id == user_id,
            LoyaltyPointTransaction.transaction_type.in_(
                [LoyaltyTransactionType.EARNED.value, LoyaltyTransactionType.ADJUSTED.value]
            ),
            or_(LoyaltyPointTransaction.expires_at.is_(None), LoyaltyPointTransaction.expires_at > now),
        )
    )
    spent = await session.scalar(
        select(func.coalesce(func.sum(LoyaltyPointTransaction.points), 0)).where(
            LoyaltyPointTransaction.user_id == user_id,
            LoyaltyPointTransaction.transaction_type.in_(
                [LoyaltyTransactionType.REDEEMED.value, LoyaltyTransactionType.EXPIRED.value]
            ),
        )
    )
    return max(0, int(earned or 0) - int(spent or 0))


def calculate_redemption(points: int, subtotal_cents: int, rule: EffectiveLoyaltyRule) -> int:
    """
    Discount in cents for redeeming points against a subtotal.

    Raises:
        ValueError: below the minimum redemption
    """
    if points < rule.min_redemption_points:
        raise ValueError(f"Minimum redemption is {rule.min_redemption_points} points")
    discount_cents = math.floor(points / rule.redemption_rate * 100)
    cap_cents = math.floor(subtotal_cents * rule.max_redemption_percentage / 100)
    return max(0, min(discount_cents, cap_cents))


async def redeem_points(
    session: AsyncSession,
    user_id: uuid.UUID,
    booking: Booking,
    points: int,
    rule: Optional[EffectiveLoyaltyRule] = None,
) -> int:
    """
    Redeem points against a booking and return the discount in cents.

    Raises:
        ValueError: insufficient balance or below the minimum redemption
    """
    rule = rule or await get_loyalty_rule(session, booking.provider_id)
    balance = await get_points_balance(session, user_id)
    if points > balance:
        raise ValueError(f"Insufficient loyalty points (balance {balance})")

    discount_cents = calculate_redemption(points, booking.subtotal_cents, rule)
    session.add(
        LoyaltyPointTransaction(
            user_id=user_id,
            booking_id=booking.id,
            points=points,
            transaction_type=LoyaltyTransactionType.REDEEMED.value,
            description=f"Redeemed on booking {booking.booking_number}",
        )
    )
    await session.flush()
    logger.info(f"User {user_id} redeemed {points} points for {discount_cents} cents on {booking.booking_number}")
    return discount_cents


async def get_loyalty_summary(session: AsyncSession, user_id: uuid.UUID, limit: int = 20) -> dict:
    rule = await get_loyalty_rule(session, None)
    balance = await get_points_balance(session, user_id)
    result = await session.execute(
        select(LoyaltyPointTransaction)
        .where(LoyaltyPointTransaction.user_id == user_id)
        .order_by(LoyaltyPointTransaction.created_at.desc())
        .limit(limit)
    )
    transactions = [
        {
            "id": str(tx.id),
            "booking_id": str(tx.booking_id) if tx.booking_id else None,
            "points": tx.points,
            "transaction_type": tx.transaction_type,
            "description": tx.description,
            "expires_at": tx.expires_at.isoformat() if tx.expires_at else None,
            "created_at": tx.created_at.isoformat(),
        }
        for tx in result.scalars().all()
    ]
    return {"balance": balance, "transactions": transactions, "rule": rule.to_dict()}
