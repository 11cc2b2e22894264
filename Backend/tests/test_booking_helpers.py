"""
Tests for booking construction helpers: phone normalization, walk-in
customers, booking numbers, status defaults and chained service schedules.

Run with: pytest tests/test_booking_helpers.py -v
"""
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marketplace.bookings import (
    ServiceLine,
    build_service_schedule,
    determine_booking_status,
    effective_tax_rate,
    generate_booking_number,
    normalize_phone_to_e164,
    resolve_walk_in_customer,
)
from marketplace.core.config import get_settings
from marketplace.core.responses import ApiError
from marketplace.models import Booking, Provider, User

START = datetime(2031, 6, 2, 10, 0, tzinfo=timezone.utc)


# ============================================================================
# PHONE NUMBERS
# ============================================================================

def test_local_number_gets_country_code():
    assert normalize_phone_to_e164("082 123 4567", "27") == "+27821234567"


def test_international_number_keeps_prefix():
    assert normalize_phone_to_e164("+1 (555) 123-4567") == "+15551234567"


def test_implausible_numbers_are_rejected():
    assert normalize_phone_to_e164("12") is None
    assert normalize_phone_to_e164("") is None
    assert normalize_phone_to_e164(None) is None


# ============================================================================
# SCHEDULES, STATUS, TAX
# ============================================================================

def test_services_chain_with_buffers():
    lines = [
        ServiceLine(offering_id=None, staff_id=None, duration_minutes=60, buffer_minutes=30),
        ServiceLine(offering_id=None, staff_id=None, duration_minutes=30),
    ]
    services, start_at, end_at = build_service_schedule(START, lines, booking_buffer=15)

    assert start_at == START
    assert services[0].scheduled_end_at == START + timedelta(minutes=60)
    assert services[1].scheduled_start_at == START + timedelta(minutes=90)
    # last chained service ends later than duration + booking buffer
    assert end_at == START + timedelta(minutes=120)


def test_schedule_end_includes_booking_buffer():
    lines = [ServiceLine(offering_id=None, staff_id=None, duration_minutes=45)]
    _, _, end_at = build_service_schedule(START, lines, booking_buffer=15)
    assert end_at == START + timedelta(minutes=60)


def test_schedule_requires_a_service():
    with pytest.raises(ValueError):
        build_service_schedule(START, [])


def test_booking_status_defaults():
    provider = Provider(require_booking_confirmation=True, default_booking_status="confirmed")
    assert determine_booking_status(provider) == "pending"
    assert determine_booking_status(provider, "started") == "in_progress"

    provider.require_booking_confirmation = False
    assert determine_booking_status(provider) == "confirmed"


def test_tax_rate_precedence():
    settings = get_settings()
    provider = Provider(tax_rate_percent=None)
    assert effective_tax_rate(None, provider, settings) == settings.platform_tax_rate_percent

    provider.tax_rate_percent = 10.0
    assert effective_tax_rate(None, provider, settings) == 10.0
    assert effective_tax_rate(5.0, provider, settings) == 5.0


# ============================================================================
# DATABASE HELPERS
# ============================================================================

@pytest.mark.asyncio
async def test_booking_numbers_increment_per_provider(async_session, provider, customer_user):
    assert await generate_booking_number(async_session, provider.id) == "BK0001"

    async_session.add(Booking(
        booking_number="BK0041",
        provider_id=provider.id,
        customer_id=customer_user.id,
        scheduled_at=START,
    ))
    await async_session.flush()

    assert await generate_booking_number(async_session, provider.id) == "BK0042"


@pytest.mark.asyncio
async def test_booking_number_restarts_after_unparseable(async_session, provider, customer_user):
    """Test: a legacy booking number that does not match BK#### restarts the sequence"""
    async_session.add(Booking(
        booking_number="LEGACY-7",
        provider_id=provider.id,
        customer_id=customer_user.id,
        scheduled_at=START,
    ))
    await async_session.flush()

    assert await generate_booking_number(async_session, provider.id) == "BK0001"


@pytest.mark.asyncio
async def test_walk_in_matches_existing_by_phone(async_session, customer_user):
    """Test: a local-format phone finds the customer stored in E.164"""
    user = await resolve_walk_in_customer(async_session, "Casey", None, "082 123 4567")
    assert user.id == customer_user.id


@pytest.mark.asyncio
async def test_walk_in_creates_profile(async_session):
    user = await resolve_walk_in_customer(async_session, "Wanda Walkin", None, "083 555 0000")

    assert user.is_walk_in is True
    assert user.phone == "+27835550000"
    assert user.email.startswith("walkin+")
    assert user.email.endswith("@marketplace.invalid")


@pytest.mark.asyncio
async def test_walk_in_fills_missing_name(async_session):
    user = User(email="noname@example.test")
    async_session.add(user)
    await async_session.flush()

    found = await resolve_walk_in_customer(async_session, "Nora Name", "NoName@example.test", None)
    assert found.id == user.id
    assert found.full_name == "Nora Name"


@pytest.mark.asyncio
async def test_walk_in_requires_name_for_new_profile(async_session):
    with pytest.raises(ApiError) as exc_info:
        await resolve_walk_in_customer(async_session, None, "new@example.test", None)
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Customer name is required for new walk-in customers"
