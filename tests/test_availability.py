"""
Tests for slot computation

Covers opening hour resolution, date blocks, occupancy of holds and
appointments, and the database-backed AvailabilityService.
"""

from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy import insert

from app.db.tables import appointments, business_hours, date_blocks
from app.models.schemas import (
    BookedAppointment,
    BusinessHoursDay,
    DateBlock,
    ProfessionalSchedule,
    TimePeriod,
)
from app.services.appointment import AppointmentNotFoundError
from app.services.availability import (
    AvailabilityService,
    compute_slots,
    local_now,
    open_periods,
    weekday_index,
)
from tests.helpers import PROFESSIONAL_ID, SERVICE_ID, START, TENANT_ID

MONDAY = date(2024, 6, 3)
NOW = datetime(2024, 6, 1, 12, 0)


def slots_for(day=MONDAY, schedule=None, hours=(), blocks=(), booked=(), duration=30, now=NOW):
    return compute_slots(
        day=day,
        schedule=schedule,
        business_hours=list(hours),
        date_blocks=list(blocks),
        appointments=list(booked),
        service_duration_minutes=duration,
        now=now,
    )


def booked(hour, minute=0, status="confirmed", duration=30, expires_at=None, day=MONDAY):
    return BookedAppointment(
        appointment_datetime=datetime.combine(day, time(hour, minute)),
        duration_minutes=duration,
        status=status,
        hold_expires_at=expires_at,
    )


class TestOpenPeriods:
    """Resolution of the working periods of a day"""

    def test_weekday_index_starts_on_sunday(self):
        assert weekday_index(date(2024, 6, 2)) == 0  # Sunday
        assert weekday_index(MONDAY) == 1
        assert weekday_index(date(2024, 6, 1)) == 6  # Saturday

    def test_fallback_without_any_configuration(self):
        periods = open_periods(MONDAY, None, [])

        assert [(p.start, p.end) for p in periods] == [
            (time(9, 0), time(12, 0)),
            (time(14, 0), time(19, 0)),
        ]

    def test_business_hours_for_the_weekday(self):
        hours = [
            BusinessHoursDay(
                day_of_week=1,
                is_open=True,
                periods=[TimePeriod(start=time(10, 0), end=time(16, 0))],
            )
        ]

        periods = open_periods(MONDAY, None, hours)

        assert [(p.start, p.end) for p in periods] == [(time(10, 0), time(16, 0))]

    def test_closed_day_has_no_periods(self):
        hours = [BusinessHoursDay(day_of_week=1, is_open=False)]

        assert open_periods(MONDAY, None, hours) == []

    def test_open_day_without_periods_uses_fallback(self):
        hours = [BusinessHoursDay(day_of_week=1, is_open=True, periods=[])]

        assert len(open_periods(MONDAY, None, hours)) == 2

    def test_professional_schedule_overrides_business_hours(self):
        schedule = ProfessionalSchedule(
            use_business_hours=False,
            work_days=[1],
            morning_start=time(8, 0),
            morning_end=time(11, 0),
            afternoon_start=None,
            afternoon_end=None,
        )
        hours = [BusinessHoursDay(day_of_week=1, is_open=False)]

        periods = open_periods(MONDAY, schedule, hours)

        assert [(p.start, p.end) for p in periods] == [(time(8, 0), time(11, 0))]

    def test_professional_day_off(self):
        schedule = ProfessionalSchedule(use_business_hours=False, work_days=[2, 3])

        assert open_periods(MONDAY, schedule, []) == []

    def test_schedule_delegating_to_business_hours(self):
        schedule = ProfessionalSchedule(use_business_hours=True, work_days=[])
        hours = [
            BusinessHoursDay(
                day_of_week=1,
                periods=[TimePeriod(start=time(13, 0), end=time(15, 0))],
            )
        ]

        periods = open_periods(MONDAY, schedule, hours)

        assert [(p.start, p.end) for p in periods] == [(time(13, 0), time(15, 0))]


class TestComputeSlots:
    """Pure slot computation"""

    def test_fallback_grid(self):
        slots = slots_for()

        assert len(slots) == 16
        assert slots[0] == time(9, 0)
        assert time(11, 30) in slots
        assert time(12, 0) not in slots
        assert slots[-1] == time(18, 30)

    def test_past_day_returns_nothing(self):
        assert slots_for(day=date(2024, 5, 31)) == []

    def test_today_is_not_past(self):
        assert slots_for(day=date(2024, 6, 1)) != []

    def test_granularity(self):
        slots = compute_slots(
            MONDAY, None, [], [], [], 30, now=NOW, granularity_minutes=60
        )

        assert slots[:3] == [time(9, 0), time(10, 0), time(11, 0)]

    def test_all_day_block_removes_everything(self):
        block = DateBlock(date=MONDAY, all_day=True, description="Feriado")

        assert slots_for(blocks=[block]) == []

    def test_ranged_block_removes_overlapping_slots(self):
        block = DateBlock(
            date=MONDAY,
            all_day=False,
            start_time=time(14, 0),
            end_time=time(15, 0),
        )

        slots = slots_for(blocks=[block])

        assert time(14, 0) not in slots
        assert time(14, 30) not in slots
        assert time(15, 0) in slots

    def test_block_on_another_day_is_ignored(self):
        block = DateBlock(date=MONDAY + timedelta(days=1), all_day=True)

        assert len(slots_for(blocks=[block])) == 16

    def test_confirmed_and_pending_appointments_occupy(self):
        slots = slots_for(booked=[booked(9), booked(10, status="pending")])

        assert time(9, 0) not in slots
        assert time(10, 0) not in slots
        assert time(9, 30) in slots

    def test_cancelled_and_completed_do_not_occupy(self):
        slots = slots_for(booked=[booked(9, status="cancelled"), booked(10, status="completed")])

        assert time(9, 0) in slots
        assert time(10, 0) in slots

    def test_live_hold_occupies(self):
        hold = booked(9, status="pending_payment", expires_at=NOW + timedelta(minutes=10))

        assert time(9, 0) not in slots_for(booked=[hold])

    def test_hold_is_live_at_its_expiry_instant(self):
        hold = booked(9, status="pending_payment", expires_at=NOW)

        assert time(9, 0) not in slots_for(booked=[hold])

    def test_expired_hold_is_vacant(self):
        hold = booked(9, status="pending_payment", expires_at=NOW - timedelta(seconds=1))

        assert time(9, 0) in slots_for(booked=[hold])

    def test_long_service_overlaps_following_appointment(self):
        slots = slots_for(booked=[booked(10)], duration=60)

        assert time(9, 0) in slots
        assert time(9, 30) not in slots
        assert time(10, 0) not in slots
        assert time(10, 30) in slots

    def test_long_appointment_blocks_later_starts(self):
        slots = slots_for(booked=[booked(14, duration=90)])

        assert time(14, 0) not in slots
        assert time(15, 0) not in slots
        assert time(15, 30) in slots

    def test_service_must_end_before_the_period_closes(self):
        slots = slots_for(duration=60)

        assert time(11, 0) in slots
        assert time(11, 30) not in slots
        assert time(18, 0) in slots
        assert time(18, 30) not in slots
        assert len(slots) == 14

    def test_deterministic(self):
        inputs = dict(booked=[booked(9), booked(15, status="pending_payment", expires_at=NOW)])

        assert slots_for(**inputs) == slots_for(**inputs)


def test_local_now_converts_utc_to_shop_time():
    assert local_now(START, "America/Sao_Paulo") == datetime(2024, 6, 1, 9, 0)


class TestAvailabilityService:
    """Availability loaded from the database"""

    async def test_lists_free_slots(self, db):
        service = AvailabilityService(db)

        response = await service.get_availability(
            TENANT_ID, PROFESSIONAL_ID, SERVICE_ID, MONDAY, START
        )

        assert response.slots[0] == "09:00"
        assert len(response.slots) == 16

    async def test_applies_stored_configuration(self, db):
        await db.execute(
            insert(business_hours).values(
                id="bh-1",
                tenant_id=TENANT_ID,
                day_of_week=1,
                is_open=True,
                periods=[{"start": "10:00", "end": "12:00"}],
            )
        )
        await db.execute(
            insert(date_blocks).values(
                id="block-1",
                tenant_id=TENANT_ID,
                professional_id=PROFESSIONAL_ID,
                date=MONDAY,
                all_day=False,
                start_time=time(11, 0),
                end_time=time(12, 0),
                description="Consulta",
            )
        )
        await db.execute(
            insert(appointments).values(
                id="appt-1",
                tenant_id=TENANT_ID,
                professional_id=PROFESSIONAL_ID,
                service_id=SERVICE_ID,
                appointment_datetime=datetime(2024, 6, 3, 10, 0),
                duration_minutes=30,
                customer_name="Maria",
                customer_phone="11900000000",
                status="confirmed",
                payment_method="local",
                total_price=100,
                prepaid_amount=0,
                created_at=START,
            )
        )
        await db.commit()

        slots = await AvailabilityService(db).get_slots(
            TENANT_ID, PROFESSIONAL_ID, SERVICE_ID, MONDAY, START
        )

        assert slots == [time(10, 30)]

    async def test_drops_past_times_today(self, db):
        # 15:20 in Sao Paulo
        now = datetime(2024, 6, 1, 18, 20)

        slots = await AvailabilityService(db).get_slots(
            TENANT_ID, PROFESSIONAL_ID, SERVICE_ID, date(2024, 6, 1), now
        )

        assert slots[0] == time(15, 30)

    async def test_unknown_service(self, db):
        with pytest.raises(AppointmentNotFoundError):
            await AvailabilityService(db).get_slots(
                TENANT_ID, PROFESSIONAL_ID, "missing", MONDAY, START
            )
