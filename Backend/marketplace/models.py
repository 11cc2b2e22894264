import uuid
from datetime import datetime, time
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .core.db import Base, UTCDateTime, utcnow


class UserRole(str, Enum):
    CUSTOMER = "customer"
    PROVIDER_OWNER = "provider_owner"
    PROVIDER_STAFF = "provider_staff"
    SUPERADMIN = "superadmin"


class StaffRole(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    EMPLOYEE = "employee"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class LocationType(str, Enum):
    AT_SALON = "at_salon"
    AT_HOME = "at_home"


class HoldStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    RELEASED = "released"


class LoyaltyTransactionType(str, Enum):
    EARNED = "earned"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    ADJUSTED = "adjusted"


def _created_at() -> Mapped[datetime]:
    return mapped_column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(32), default=UserRole.CUSTOMER.value, nullable=False)
    is_walk_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = _created_at()


class Provider(Base):
    __tablename__ = "providers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="Africa/Johannesburg", nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="ZAR", nullable=False)
    tax_rate_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    require_booking_confirmation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    default_booking_status: Mapped[str] = mapped_column(
        String(32), default=BookingStatus.CONFIRMED.value, nullable=False
    )
    allow_double_booking_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_bookings_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class ProviderLocation(Base):
    __tablename__ = "provider_locations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("providers.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location_type: Mapped[str] = mapped_column(String(16), default="salon", nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    address_line1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class ProviderStaff(Base):
    __tablename__ = "provider_staff"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("providers.id"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(16), default=StaffRole.EMPLOYEE.value, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Null work hours means the staff member has no configured shift.
    work_start: Mapped[time | None] = mapped_column(Time, nullable=True)
    work_end: Mapped[time | None] = mapped_column(Time, nullable=True)
    # Comma separated ISO weekdays (Monday=0) the shift applies to.
    working_days: Mapped[str] = mapped_column(String(32), default="0,1,2,3,4,5", nullable=False)
    created_at: Mapped[datetime] = _created_at()

    @property
    def working_days_list(self) -> list[int]:
        return [int(day) for day in self.working_days.split(",") if day.strip()]


class Offering(Base):
    __tablename__ = "offerings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("providers.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    buffer_minutes: Mapped[int] = mapped_column(Integer, default=15, nullable=False)
    processing_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    finishing_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (UniqueConstraint("provider_id", "name", name="uq_offering_provider_name"),)


class TimeBlock(Base):
    __tablename__ = "availability_blocks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("providers.id"), nullable=False, index=True)
    staff_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("provider_staff.id"), nullable=True, index=True)
    location_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("provider_locations.id"), nullable=True, index=True
    )
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    block_type: Mapped[str] = mapped_column(String(32), default="unavailable", nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = _created_at()


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("providers.id"), nullable=False, index=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), default=BookingStatus.CONFIRMED.value, nullable=False, index=True)
    location_type: Mapped[str] = mapped_column(String(16), default=LocationType.AT_SALON.value, nullable=False)
    location_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("provider_locations.id"), nullable=True)
    address_line1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_line2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    address_state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    address_country: Mapped[str | None] = mapped_column(String(128), nullable=True)
    address_postal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    current_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_source: Mapped[str] = mapped_column(String(32), default="walk_in", nullable=False)

    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    discount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    discount_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tax_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    tax_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tip_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    travel_fee_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    service_fee_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    service_fee_percentage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_paid_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refund_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="ZAR", nullable=False)
    payment_status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)

    special_requests: Mapped[str | None] = mapped_column(Text, nullable=True)
    loyalty_points_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(32), nullable=True)

    arrival_otp: Mapped[str | None] = mapped_column(String(8), nullable=True)
    arrival_otp_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    arrival_otp_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    services: Mapped[list["BookingService"]] = relationship(
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BookingService.scheduled_start_at",
    )

    __table_args__ = (
        UniqueConstraint("provider_id", "booking_number", name="uq_booking_provider_number"),
    )
    # Every flush of a dirty booking bumps version; a stale row raises StaleDataError.
    __mapper_args__ = {"version_id_col": version}

    def is_active(self) -> bool:
        return self.status in (
            BookingStatus.PENDING.value,
            BookingStatus.CONFIRMED.value,
            BookingStatus.IN_PROGRESS.value,
        )

    @property
    def remaining_balance_cents(self) -> int:
        return max(0, self.total_cents - self.total_paid_cents)


class BookingService(Base):
    __tablename__ = "booking_services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    offering_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("offerings.id"), nullable=True)
    staff_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("provider_staff.id"), nullable=True, index=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    buffer_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processing_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    finishing_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scheduled_start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    scheduled_end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    booking: Mapped["Booking"] = relationship(back_populates="services")


class BookingEvent(Base):
    __tablename__ = "booking_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class BookingPayment(Base):
    __tablename__ = "booking_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_provider: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="completed", nullable=False)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class BookingHold(Base):
    __tablename__ = "booking_holds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("providers.id"), nullable=False, index=True)
    staff_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("provider_staff.id"), nullable=True, index=True)
    services: Mapped[list] = mapped_column(JSON, nullable=False)
    location_type: Mapped[str] = mapped_column(String(16), nullable=False)
    location_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("provider_locations.id"), nullable=True)
    address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    hold_status: Mapped[str] = mapped_column(String(16), default=HoldStatus.ACTIVE.value, nullable=False)
    guest_fingerprint_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("bookings.id"), nullable=True)
    created_at: Mapped[datetime] = _created_at()

    def is_hold_active(self, now: datetime) -> bool:
        return self.hold_status == HoldStatus.ACTIVE.value and self.expires_at > now


class LoyaltyRule(Base):
    __tablename__ = "loyalty_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # Null provider_id means the platform-wide rule.
    provider_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("providers.id"), nullable=True, index=True)
    points_per_currency_unit: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    redemption_rate: Mapped[float] = mapped_column(Float, default=10.0, nullable=False)
    min_redemption_points: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    max_redemption_percentage: Mapped[float] = mapped_column(Float, default=50.0, nullable=False)
    expiry_days: Mapped[int] = mapped_column(Integer, default=365, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = _created_at()


class LoyaltyPointTransaction(Base):
    __tablename__ = "loyalty_point_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("bookings.id"), nullable=True, index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    link: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = _created_at()


class CancellationPolicy(Base):
    __tablename__ = "cancellation_policies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("providers.id"), nullable=False, unique=True)
    hours_before_cutoff: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    grace_window_minutes: Mapped[int] = mapped_column(Integer, default=15, nullable=False)
    late_cancellation_type: Mapped[str] = mapped_column(String(32), default="no_refund", nullable=False)
    partial_refund_percentage: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    allow_late_cancellation: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = _created_at()


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    target_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    extra_data: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = _created_at()
