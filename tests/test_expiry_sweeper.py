"""
Tests for the expired hold sweep
"""

from datetime import time

import pytest

from app.db.repository import DatabaseError
from app.models.schemas import CustomerInfo, PaymentStatus
from app.services.availability import AvailabilityService
from app.services.expiry_sweeper import ExpirySweeper
from app.services.notifier import NotificationError
from app.services.reservation import ReservationCoordinator
from tests.helpers import (
    PROFESSIONAL_ID,
    SERVICE_ID,
    SLOT_AT,
    TENANT_ID,
    fetch_appointment,
    notification_types,
)


@pytest.fixture
def coordinator(db, gateway, notifier, clock):
    return ReservationCoordinator(db, gateway, notifier, clock)


@pytest.fixture
def sweeper(db, notifier, clock):
    return ExpirySweeper(db, notifier, clock)


async def free_slots(db, clock):
    return await AvailabilityService(db).get_slots(
        TENANT_ID, PROFESSIONAL_ID, SERVICE_ID, SLOT_AT.date(), clock()
    )


async def test_nothing_to_sweep(sweeper, notifier):
    result = await sweeper.run()

    assert result.cancelled_count == 0
    assert result.notifications_sent == 0
    notifier.send.assert_not_awaited()


async def test_live_hold_is_left_alone(coordinator, sweeper, slot, customer, clock, session_factory):
    hold = await coordinator.begin_reservation(slot, customer)
    clock.advance(minutes=15)

    result = await sweeper.run()

    assert result.cancelled_count == 0
    assert (await fetch_appointment(session_factory, hold.hold_id))["status"] == "pending_payment"


async def test_timeout_releases_slot(
    coordinator, sweeper, slot, customer, notifier, clock, db, session_factory
):
    hold = await coordinator.begin_reservation(slot, customer)
    notifier.send.reset_mock()
    assert time(14, 0) not in await free_slots(db, clock)

    clock.advance(minutes=16)
    result = await sweeper.run()

    assert result.cancelled_count == 1
    assert result.notifications_sent == 1
    row = await fetch_appointment(session_factory, hold.hold_id)
    assert row["status"] == "cancelled"
    assert row["hold_expires_at"] is None
    assert notifier.send.await_count == 1
    phone, body = notifier.send.await_args.args
    assert phone == customer.phone
    assert "Barbearia Teste" in body
    assert "15 minutos" in body
    assert time(14, 0) in await free_slots(db, clock)
    assert await notification_types(session_factory) == ["payment_expired"]


async def test_expired_hold_is_free_before_sweep(coordinator, slot, customer, clock, db):
    await coordinator.begin_reservation(slot, customer)
    clock.advance(minutes=16)

    assert time(14, 0) in await free_slots(db, clock)


async def test_sweep_is_idempotent(coordinator, sweeper, slot, customer, notifier, clock):
    await coordinator.begin_reservation(slot, customer)
    clock.advance(minutes=16)
    notifier.send.reset_mock()

    first = await sweeper.run()
    second = await sweeper.run()

    assert first.cancelled_count == 1
    assert second.cancelled_count == 0
    assert second.notifications_sent == 0
    assert notifier.send.await_count == 1


async def test_concurrent_sweeps_cancel_once(
    coordinator, slot, customer, notifier, clock, session_factory
):
    await coordinator.begin_reservation(slot, customer)
    clock.advance(minutes=16)
    notifier.send.reset_mock()

    async with session_factory() as first_session, session_factory() as second_session:
        first = ExpirySweeper(first_session, notifier, clock)
        second = ExpirySweeper(second_session, notifier, clock)
        expired = await second.appointment_repo.list_expired_holds(clock())

        first_result = await first.run()
        # The second sweeper already selected the row before the first cancelled it
        won = await second.appointment_repo.cancel_hold(
            expired[0]["id"], clock(), only_if_expired=True
        )

    assert first_result.cancelled_count == 1
    assert won is False
    assert notifier.send.await_count == 1


async def test_confirmed_hold_is_not_swept(coordinator, sweeper, slot, customer, gateway, clock):
    hold = await coordinator.begin_reservation(slot, customer)
    gateway.get_status.return_value = PaymentStatus.APPROVED
    await coordinator.poll_status(hold.hold_id)
    clock.advance(minutes=16)

    result = await sweeper.run()

    assert result.cancelled_count == 0


async def test_unreachable_customer_is_skipped(coordinator, sweeper, slot, customer, notifier, clock):
    await coordinator.begin_reservation(slot, customer)
    clock.advance(minutes=16)
    notifier.send.reset_mock()
    notifier.user_reachable.return_value = False

    result = await sweeper.run()

    assert result.cancelled_count == 1
    assert result.notifications_sent == 0
    notifier.send.assert_not_awaited()


async def test_delivery_failure_does_not_undo_cancel(
    coordinator, sweeper, slot, customer, notifier, clock, session_factory
):
    hold = await coordinator.begin_reservation(slot, customer)
    clock.advance(minutes=16)
    notifier.send.side_effect = NotificationError("WhatsApp API returned status 500")

    result = await sweeper.run()

    assert result.cancelled_count == 1
    assert result.notifications_sent == 0
    assert (await fetch_appointment(session_factory, hold.hold_id))["status"] == "cancelled"


async def test_row_failure_does_not_abort_batch(
    coordinator, sweeper, slot, customer, clock, session_factory
):
    first = await coordinator.begin_reservation(slot, customer)
    later = slot.model_copy(update={"appointment_datetime": SLOT_AT.replace(hour=15)})
    second = await coordinator.begin_reservation(
        later, CustomerInfo(name="Pedro Souza", phone="11955554444")
    )
    clock.advance(minutes=16)

    real_cancel = sweeper.appointment_repo.cancel_hold

    async def flaky_cancel(appointment_id, *args, **kwargs):
        if appointment_id == first.hold_id:
            raise DatabaseError("connection reset")
        return await real_cancel(appointment_id, *args, **kwargs)

    sweeper.appointment_repo.cancel_hold = flaky_cancel

    result = await sweeper.run()

    assert result.cancelled_count == 1
    assert result.failed == [first.hold_id]
    assert (await fetch_appointment(session_factory, first.hold_id))["status"] == "pending_payment"
    assert (await fetch_appointment(session_factory, second.hold_id))["status"] == "cancelled"
