"""
Provider back-office booking tests.

Covers creation (walk-in and existing customers), double-booking protection,
optimistic locking on updates, staff reassignment, loyalty on completion,
offline payments, at-home arrival and bulk actions.

Run with: pytest tests/test_provider_bookings.py -v
"""
import os
import sys
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import auth_headers, booking_payload, future_at, make_staff_user
from marketplace.bookings import SLOT_UNAVAILABLE_MESSAGE, STALE_BOOKING_MESSAGE
from marketplace.core.config import get_settings
from marketplace.models import (
    AuditLog,
    Booking,
    BookingEvent,
    BookingPayment,
    LoyaltyPointTransaction,
    Notification,
    Provider,
    ProviderStaff,
    StaffRole,
    User,
    UserRole,
)

URL = "/api/provider/bookings"


async def _create(client, owner_user, offering, staff=None, **extra):
    response = await client.post(URL, json=booking_payload(offering, staff, **extra), headers=auth_headers(owner_user))
    assert response.status_code == 201, response.text
    return response.json()["data"]


# ============================================================================
# CREATE
# ============================================================================

@pytest.mark.asyncio
async def test_create_walk_in_booking(client, async_session, owner_user, offering, staff_member, salon_location):
    """Test: walk-in booking creates the customer, totals, event, audit and notification"""
    data = await _create(client, owner_user, offering, staff_member)

    assert data["booking_number"] == "BK0001"
    assert data["status"] == "booked"
    assert data["booking_source"] == "walk_in"
    assert data["location_id"] == str(salon_location.id)
    assert data["subtotal_cents"] == 45000
    assert data["tax_rate"] == 15.0
    assert data["tax_cents"] == 6750
    assert data["service_fee_cents"] == 0
    assert data["total_cents"] == 51750
    assert data["version"] == 1
    assert data["customer"]["full_name"] == "Walter Walkin"
    assert data["customer"]["phone"] == "+27820001111"
    assert len(data["services"]) == 1
    assert data["services"][0]["staff_id"] == str(staff_member.id)

    booking_id = uuid.UUID(data["id"])
    events = (await async_session.execute(
        select(BookingEvent).where(BookingEvent.booking_id == booking_id)
    )).scalars().all()
    assert [e.event_type for e in events] == ["created"]
    assert events[0].event_data["insert_path"] == "locked"

    audit = (await async_session.execute(select(AuditLog).where(AuditLog.action == "booking.created"))).scalar_one()
    assert audit.target_id == data["id"]

    walk_in = await async_session.get(User, uuid.UUID(data["customer_id"]))
    assert walk_in.is_walk_in is True
    notification = (await async_session.execute(
        select(Notification).where(Notification.user_id == walk_in.id)
    )).scalar_one()
    assert notification.type == "new_appointment"


@pytest.mark.asyncio
async def test_booking_numbers_increment(client, owner_user, offering):
    first = await _create(client, owner_user, offering, when=future_at(hour=8))
    second = await _create(client, owner_user, offering, when=future_at(hour=8))

    assert first["booking_number"] == "BK0001"
    assert second["booking_number"] == "BK0002"


@pytest.mark.asyncio
async def test_create_for_existing_customer(client, owner_user, offering, customer_user):
    data = await _create(client, owner_user, offering, customer_id=str(customer_user.id), customer_name=None)
    assert data["customer_id"] == str(customer_user.id)


@pytest.mark.asyncio
async def test_create_requires_a_service(client, owner_user, provider):
    response = await client.post(
        URL,
        json={"customer_name": "No Service", "scheduled_at": future_at().isoformat()},
        headers=auth_headers(owner_user),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_create_rejects_foreign_staff(client, owner_user, offering):
    response = await client.post(
        URL, json=booking_payload(offering, staff_id=str(uuid.uuid4())), headers=auth_headers(owner_user)
    )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Staff member not found for this provider"


@pytest.mark.asyncio
async def test_monthly_limit(client, async_session, owner_user, provider, offering):
    provider.max_bookings_per_month = 1
    await async_session.commit()

    await _create(client, owner_user, offering)
    response = await client.post(URL, json=booking_payload(offering), headers=auth_headers(owner_user))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "LIMIT_REACHED"


# ============================================================================
# DOUBLE BOOKING
# ============================================================================

@pytest.mark.asyncio
async def test_double_booking_rejected(client, async_session, owner_user, offering, staff_member):
    """Test: same staff, overlapping time => 409 and nothing inserted"""
    when = future_at(hour=8)
    await _create(client, owner_user, offering, staff_member, when=when)

    response = await client.post(
        URL,
        json=booking_payload(offering, staff_member, when=when + timedelta(minutes=30)),
        headers=auth_headers(owner_user),
    )

    assert response.status_code == 409
    assert response.json()["error"] == {
        "code": "CONFLICT",
        "message": SLOT_UNAVAILABLE_MESSAGE,
        "details": None,
    }


@pytest.mark.asyncio
async def test_back_to_back_after_buffer_allowed(client, owner_user, offering, staff_member):
    """Test: 60 min service + 15 min buffer, next booking 75 minutes later fits"""
    when = future_at(hour=8)
    await _create(client, owner_user, offering, staff_member, when=when)
    await _create(client, owner_user, offering, staff_member, when=when + timedelta(minutes=75))


@pytest.mark.asyncio
async def test_double_booking_override(client, async_session, owner_user, provider, offering, staff_member):
    provider.allow_double_booking_override = True
    await async_session.commit()

    when = future_at(hour=8)
    await _create(client, owner_user, offering, staff_member, when=when)
    data = await _create(client, owner_user, offering, staff_member, when=when)
    assert data["booking_number"] == "BK0002"


# ============================================================================
# UPDATE
# ============================================================================

@pytest.mark.asyncio
async def test_complete_awards_loyalty(client, async_session, owner_user, offering, customer_user):
    booking = await _create(client, owner_user, offering, customer_id=str(customer_user.id))

    response = await client.patch(
        f"{URL}/{booking['id']}",
        json={"status": "completed", "version": booking["version"]},
        headers=auth_headers(owner_user),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["completed_at"] is not None
    assert data["loyalty_points_earned"] == 450
    assert data["version"] > booking["version"]

    earned = await async_session.scalar(
        select(func.sum(LoyaltyPointTransaction.points)).where(LoyaltyPointTransaction.user_id == customer_user.id)
    )
    assert earned == 450


@pytest.mark.asyncio
async def test_stale_version_rejected(client, owner_user, offering):
    booking = await _create(client, owner_user, offering)

    response = await client.patch(
        f"{URL}/{booking['id']}",
        json={"status": "started", "version": booking["version"] + 5},
        headers=auth_headers(owner_user),
    )
    assert response.status_code == 409
    assert response.json()["error"]["message"] == STALE_BOOKING_MESSAGE


@pytest.mark.asyncio
async def test_stale_updated_at_rejected(client, owner_user, offering):
    """Test: updated_at more than the tolerance away from the stored value => 409"""
    booking = await _create(client, owner_user, offering)
    stale = datetime.fromisoformat(booking["updated_at"]) - timedelta(seconds=5)

    response = await client.patch(
        f"{URL}/{booking['id']}",
        json={"status": "started", "updated_at": stale.isoformat()},
        headers=auth_headers(owner_user),
    )
    assert response.status_code == 409
    assert response.json()["error"]["message"] == STALE_BOOKING_MESSAGE

    response = await client.patch(
        f"{URL}/{booking['id']}",
        json={"status": "started", "updated_at": booking["updated_at"]},
        headers=auth_headers(owner_user),
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_empty_patch_rejected(client, owner_user, offering):
    booking = await _create(client, owner_user, offering)

    response = await client.patch(
        f"{URL}/{booking['id']}", json={"version": 1}, headers=auth_headers(owner_user)
    )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "No updatable fields provided"


@pytest.mark.asyncio
async def test_reschedule_into_conflict(client, owner_user, offering, staff_member):
    first = await _create(client, owner_user, offering, staff_member, when=future_at(hour=8))
    second = await _create(client, owner_user, offering, staff_member, when=future_at(hour=11))

    response = await client.patch(
        f"{URL}/{second['id']}",
        json={"scheduled_at": future_at(hour=8, minute=30).isoformat()},
        headers=auth_headers(owner_user),
    )
    assert response.status_code == 409

    # moving a booking within its own slot does not conflict with itself
    response = await client.patch(
        f"{URL}/{first['id']}",
        json={"scheduled_at": future_at(hour=8, minute=15).isoformat()},
        headers=auth_headers(owner_user),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["services"][0]["scheduled_start_at"].startswith(
        future_at(hour=8, minute=15).isoformat()[:16]
    )


@pytest.mark.asyncio
async def test_discount_recalculates_total(client, owner_user, offering):
    booking = await _create(client, owner_user, offering)

    response = await client.patch(
        f"{URL}/{booking['id']}",
        json={"discount_cents": 5000, "tip_cents": 1000},
        headers=auth_headers(owner_user),
    )
    data = response.json()["data"]
    # tax stays as booked; total = (45000 - 5000) + 6750 + 1000
    assert data["total_cents"] == 47750


# ============================================================================
# READ
# ============================================================================

@pytest.mark.asyncio
async def test_list_filters_by_status_and_search(client, owner_user, offering, customer_user):
    await _create(client, owner_user, offering)
    other = await _create(client, owner_user, offering, customer_id=str(customer_user.id))
    await client.patch(f"{URL}/{other['id']}", json={"status": "cancelled"}, headers=auth_headers(owner_user))

    response = await client.get(URL, params={"status": "booked"}, headers=auth_headers(owner_user))
    data = response.json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["customer"]["full_name"] == "Walter Walkin"

    response = await client.get(URL, params={"search": "casey"}, headers=auth_headers(owner_user))
    data = response.json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["status"] == "cancelled"
    assert data["has_more"] is False


@pytest.mark.asyncio
async def test_get_unknown_booking(client, owner_user, provider):
    response = await client.get(f"{URL}/{uuid.uuid4()}", headers=auth_headers(owner_user))
    assert response.status_code == 404


# ============================================================================
# PAYMENTS AND ARRIVAL
# ============================================================================

@pytest.mark.asyncio
async def test_mark_paid_records_full_balance(client, async_session, owner_user, offering):
    booking = await _create(client, owner_user, offering)

    response = await client.post(
        f"{URL}/{booking['id']}/mark-paid", json={"payment_method": "cash"}, headers=auth_headers(owner_user)
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["payment"]["amount_cents"] == 51750
    assert data["payment"]["payment_provider"] == "cash"
    assert data["booking"]["payment_status"] == "paid"
    assert data["booking"]["total_paid_cents"] == 51750

    response = await client.post(
        f"{URL}/{booking['id']}/mark-paid", json={"payment_method": "cash"}, headers=auth_headers(owner_user)
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "ALREADY_PAID"

    payments = (await async_session.execute(select(BookingPayment))).scalars().all()
    assert len(payments) == 1


@pytest.mark.asyncio
async def test_partial_payment(client, owner_user, offering):
    booking = await _create(client, owner_user, offering)

    response = await client.post(
        f"{URL}/{booking['id']}/mark-paid",
        json={"payment_method": "card", "amount_cents": 20000},
        headers=auth_headers(owner_user),
    )
    data = response.json()["data"]
    assert data["booking"]["payment_status"] == "partially_paid"
    assert data["payment"]["payment_provider"] == "card_terminal"


@pytest.mark.asyncio
async def test_mark_paid_rejects_unknown_method(client, owner_user, offering):
    booking = await _create(client, owner_user, offering)

    response = await client.post(
        f"{URL}/{booking['id']}/mark-paid", json={"payment_method": "barter"}, headers=auth_headers(owner_user)
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_arrive_at_home_booking(client, owner_user, offering, staff_member):
    booking = await _create(
        client, owner_user, offering, staff_member, location_type="at_home", address_line1="12 Long Street"
    )
    assert booking["current_stage"] == "confirmed"
    assert booking["address"]["line1"] == "12 Long Street"

    response = await client.post(f"{URL}/{booking['id']}/arrive", headers=auth_headers(owner_user))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["verification_required"] is False
    assert data["otp"] is None
    assert data["booking"]["current_stage"] == "provider_arrived"


@pytest.mark.asyncio
async def test_arrive_with_verification_sends_otp(client, async_session, owner_user, offering, staff_member, monkeypatch):
    """Test: with arrival verification on, arrival issues a 6 digit code and an otp_sent event"""
    monkeypatch.setattr(get_settings(), "require_arrival_verification", True)
    booking = await _create(
        client, owner_user, offering, staff_member, location_type="at_home", address_line1="12 Long Street"
    )

    response = await client.post(f"{URL}/{booking['id']}/arrive", headers=auth_headers(owner_user))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["verification_required"] is True
    assert len(data["otp"]) == 6
    assert data["otp"].isdigit()

    events = (await async_session.execute(
        select(BookingEvent.event_type).where(BookingEvent.booking_id == uuid.UUID(booking["id"]))
    )).scalars().all()
    assert "otp_sent" in events


@pytest.mark.asyncio
async def test_arrive_rejects_salon_booking(client, owner_user, offering):
    booking = await _create(client, owner_user, offering)

    response = await client.post(f"{URL}/{booking['id']}/arrive", headers=auth_headers(owner_user))
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"


# ============================================================================
# STAFF PERMISSIONS
# ============================================================================

@pytest.mark.asyncio
async def test_employee_can_view_but_not_edit(client, async_session, owner_user, provider, offering):
    booking = await _create(client, owner_user, offering)
    employee = await make_staff_user(async_session, provider, StaffRole.EMPLOYEE.value, "emma@glow.test")

    response = await client.get(URL, headers=auth_headers(employee))
    assert response.status_code == 200
    assert response.json()["data"]["total"] == 1

    response = await client.patch(
        f"{URL}/{booking['id']}", json={"status": "completed"}, headers=auth_headers(employee)
    )
    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Access denied. Missing permission: edit_appointments."

    response = await client.post(
        f"{URL}/{booking['id']}/mark-paid", json={"payment_method": "cash"}, headers=auth_headers(employee)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_manager_can_edit(client, async_session, owner_user, provider, offering):
    booking = await _create(client, owner_user, offering)
    manager = await make_staff_user(async_session, provider, StaffRole.MANAGER.value, "max@glow.test")

    response = await client.patch(
        f"{URL}/{booking['id']}", json={"status": "started"}, headers=auth_headers(manager)
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "started"


# ============================================================================
# STAFF REASSIGNMENT
# ============================================================================

@pytest.mark.asyncio
async def test_reassign_staff(client, async_session, owner_user, provider, offering, staff_member):
    """Test: PATCH staff_id moves the services, logs staff_changed, and checks the new staff's schedule"""
    alex = ProviderStaff(provider_id=provider.id, name="Alex Assistant", role=StaffRole.EMPLOYEE.value)
    async_session.add(alex)
    await async_session.commit()

    morning = await _create(client, owner_user, offering, staff_member, when=future_at(hour=8))
    await _create(client, owner_user, offering, alex, when=future_at(hour=8))
    later = await _create(client, owner_user, offering, staff_member, when=future_at(hour=11))

    response = await client.patch(
        f"{URL}/{later['id']}", json={"staff_id": str(alex.id)}, headers=auth_headers(owner_user)
    )
    assert response.status_code == 200
    assert response.json()["data"]["services"][0]["staff_id"] == str(alex.id)

    event = (await async_session.execute(
        select(BookingEvent).where(
            BookingEvent.booking_id == uuid.UUID(later["id"]),
            BookingEvent.event_type == "staff_changed",
        )
    )).scalar_one()
    assert event.event_data == {"from": str(staff_member.id), "to": str(alex.id)}

    # Alex is already booked at 08:00
    response = await client.patch(
        f"{URL}/{morning['id']}", json={"staff_id": str(alex.id)}, headers=auth_headers(owner_user)
    )
    assert response.status_code == 409
    assert response.json()["error"]["message"] == SLOT_UNAVAILABLE_MESSAGE


@pytest.mark.asyncio
async def test_reassign_to_foreign_staff(client, owner_user, offering, staff_member):
    booking = await _create(client, owner_user, offering, staff_member)

    response = await client.patch(
        f"{URL}/{booking['id']}", json={"staff_id": str(uuid.uuid4())}, headers=auth_headers(owner_user)
    )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Staff member not found for this provider"


# ============================================================================
# BULK ACTIONS
# ============================================================================

@pytest.mark.asyncio
async def test_bulk_cancel_reverses_loyalty(client, async_session, owner_user, provider, offering, customer_user):
    """Test: bulk cancel of a completed booking reverses its loyalty points"""
    booking = await _create(client, owner_user, offering, customer_id=str(customer_user.id))
    await client.patch(
        f"{URL}/{booking['id']}", json={"status": "completed"}, headers=auth_headers(owner_user)
    )
    other = await _create(client, owner_user, offering, when=future_at(hour=12))

    response = await client.post(
        f"{URL}/bulk",
        json={"booking_ids": [booking["id"], other["id"]], "action": "cancel"},
        headers=auth_headers(owner_user),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert sorted(data["updated"]) == sorted([booking["id"], other["id"]])
    assert data["failed"] == []
    assert data["loyalty_reversed"] == 450

    detail = await client.get(f"{URL}/{booking['id']}", headers=auth_headers(owner_user))
    assert detail.json()["data"]["status"] == "cancelled"
    assert detail.json()["data"]["cancelled_by"] == "provider"

    audit = (await async_session.execute(
        select(AuditLog).where(AuditLog.action == "booking.bulk_cancelled")
    )).scalar_one()
    assert audit.provider_id == provider.id


@pytest.mark.asyncio
async def test_bulk_skips_other_providers_bookings(client, async_session, owner_user, offering, customer_user):
    """Test: a booking owned by another provider is reported as not found and left alone"""
    rival_owner = User(email="rival@other.test", full_name="Rita Rival", role=UserRole.PROVIDER_OWNER.value)
    async_session.add(rival_owner)
    await async_session.flush()
    rival = Provider(owner_user_id=rival_owner.id, business_name="Other Salon", slug="other-salon", status="active")
    async_session.add(rival)
    await async_session.flush()
    rival_booking = Booking(
        booking_number="BK0001",
        provider_id=rival.id,
        customer_id=customer_user.id,
        status="confirmed",
        scheduled_at=future_at(),
        services=[],
    )
    async_session.add(rival_booking)
    await async_session.commit()

    response = await client.post(
        f"{URL}/bulk",
        json={"booking_ids": [str(rival_booking.id)], "action": "complete"},
        headers=auth_headers(owner_user),
    )

    assert response.status_code == 200
    assert response.json()["data"]["failed"] == [{"id": str(rival_booking.id), "reason": "Booking not found"}]
    assert rival_booking.status == "confirmed"


@pytest.mark.asyncio
async def test_bulk_requires_edit_permission(client, async_session, owner_user, provider, offering):
    booking = await _create(client, owner_user, offering)
    employee = await make_staff_user(async_session, provider, StaffRole.EMPLOYEE.value, "erin@glow.test")

    response = await client.post(
        f"{URL}/bulk",
        json={"booking_ids": [booking["id"]], "action": "cancel"},
        headers=auth_headers(employee),
    )
    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Access denied. Missing permission: edit_appointments."


@pytest.mark.asyncio
async def test_bulk_rejects_unknown_action(client, owner_user, offering):
    booking = await _create(client, owner_user, offering)

    response = await client.post(
        f"{URL}/bulk", json={"booking_ids": [booking["id"]], "action": "archive"}, headers=auth_headers(owner_user)
    )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "action must be 'cancel' or 'complete'"
