"""
Availability Service

Computes the bookable start times of a professional on a given day.

``compute_slots`` is a pure function of its inputs (the current instant
included) so it can be exercised without a database. ``AvailabilityService``
loads those inputs for a tenant and applies the caller-side rules that
depend on the shop's wall clock.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.repository import AppointmentRepository, ScheduleRepository
from app.models.schemas import (
    AvailabilityResponse,
    BookedAppointment,
    BusinessHoursDay,
    DateBlock,
    ProfessionalSchedule,
    TimePeriod,
)
from app.services.appointment import AppointmentNotFoundError, occupies_slot

logger = logging.getLogger(__name__)

# Used when neither the professional nor the tenant configured hours for the day
FALLBACK_PERIODS: Tuple[TimePeriod, ...] = (
    TimePeriod(start=time(9, 0), end=time(12, 0)),
    TimePeriod(start=time(14, 0), end=time(19, 0)),
)

Interval = Tuple[datetime, datetime]


def weekday_index(day: date) -> int:
    """Day of week with 0 = Sunday, as stored in business hours."""
    return (day.weekday() + 1) % 7


def _overlaps(a: Interval, b: Interval) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def open_periods(
    day: date,
    schedule: Optional[ProfessionalSchedule],
    business_hours: Sequence[BusinessHoursDay],
) -> List[TimePeriod]:
    """
    Resolve the working periods of one day.

    A professional schedule wins unless it delegates to business hours.
    Otherwise the tenant's record for the weekday applies; a missing
    record, or an open day without periods, falls back to the default
    shop hours. A day marked closed has no periods.
    """
    dow = weekday_index(day)

    if schedule is not None and not schedule.use_business_hours:
        if dow not in schedule.work_days:
            return []
        periods = []
        for start, end in (
            (schedule.morning_start, schedule.morning_end),
            (schedule.afternoon_start, schedule.afternoon_end),
        ):
            if start is not None and end is not None and end > start:
                periods.append(TimePeriod(start=start, end=end))
        return periods

    record = next((bh for bh in business_hours if bh.day_of_week == dow), None)
    if record is None:
        return list(FALLBACK_PERIODS)
    if not record.is_open:
        return []
    return list(record.periods) if record.periods else list(FALLBACK_PERIODS)


def _blocked_intervals(day: date, date_blocks: Iterable[DateBlock]) -> List[Interval]:
    intervals = []
    for block in date_blocks:
        if block.date != day:
            continue
        if block.all_day or block.start_time is None or block.end_time is None:
            intervals.append(
                (datetime.combine(day, time.min), datetime.combine(day, time.min) + timedelta(days=1))
            )
        else:
            intervals.append(
                (datetime.combine(day, block.start_time), datetime.combine(day, block.end_time))
            )
    return intervals


def _occupied_intervals(
    appointments: Iterable[BookedAppointment],
    now: datetime,
) -> List[Interval]:
    intervals = []
    for appointment in appointments:
        if not occupies_slot(appointment.model_dump(), now):
            continue
        start = appointment.appointment_datetime
        intervals.append((start, start + timedelta(minutes=appointment.duration_minutes)))
    return intervals


def compute_slots(
    day: date,
    schedule: Optional[ProfessionalSchedule],
    business_hours: Sequence[BusinessHoursDay],
    date_blocks: Sequence[DateBlock],
    appointments: Sequence[BookedAppointment],
    service_duration_minutes: int,
    now: datetime,
    today: Optional[date] = None,
    granularity_minutes: int = 30,
) -> List[time]:
    """
    Compute the free start times of a day.

    Args:
        day: Local calendar day to compute
        schedule: Professional schedule, or None to use business hours
        business_hours: Tenant opening hours, one entry per weekday
        date_blocks: Closures that apply to this professional
        appointments: Appointments of the professional around that day
        service_duration_minutes: Length of the service being booked
        now: Current UTC time, used to decide whether holds are live
        today: Local date at ``now``; defaults to ``now.date()``
        granularity_minutes: Distance between candidate start times

    Returns:
        Sorted list of free start times. Empty for past days.

    Example:
        >>> compute_slots(date(2024, 6, 3), None, [], [], [], 30,
        ...               now=datetime(2024, 6, 1, 12, 0))[:2]
        [datetime.time(9, 0), datetime.time(9, 30)]
    """
    if day < (today or now.date()):
        return []

    duration = timedelta(minutes=service_duration_minutes)
    step = timedelta(minutes=granularity_minutes)
    unavailable = _blocked_intervals(day, date_blocks) + _occupied_intervals(appointments, now)

    slots: List[time] = []
    for period in open_periods(day, schedule, business_hours):
        cursor = datetime.combine(day, period.start)
        period_end = datetime.combine(day, period.end)
        while cursor + duration <= period_end:
            candidate = (cursor, cursor + duration)
            if not any(_overlaps(candidate, taken) for taken in unavailable):
                slots.append(cursor.time())
            cursor += step

    return sorted(set(slots))


def local_now(now: datetime, tz_name: str) -> datetime:
    """Shop wall-clock time for a naive UTC instant."""
    return now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)


class AvailabilityService:
    """Loads schedule data for a tenant and computes its free slots."""

    def __init__(self, db_session: AsyncSession):
        """
        Initialize AvailabilityService.

        Args:
            db_session: Async database session
        """
        self.db = db_session
        self.schedule_repo = ScheduleRepository(db_session)
        self.appointment_repo = AppointmentRepository(db_session)

    async def get_slots(
        self,
        tenant_id: str,
        professional_id: str,
        service_id: str,
        day: date,
        now: datetime,
    ) -> List[time]:
        """
        Get the bookable start times of a professional for one service.

        Start times earlier than the shop's current wall-clock time are
        dropped when ``day`` is today.

        Raises:
            AppointmentNotFoundError: If the professional or service is unknown
        """
        professional = await self.schedule_repo.get_professional(tenant_id, professional_id)
        if professional is None:
            raise AppointmentNotFoundError(f"Professional {professional_id} not found")
        service = await self.schedule_repo.get_service(tenant_id, service_id)
        if service is None:
            raise AppointmentNotFoundError(f"Service {service_id} not found")

        schedule = (
            ProfessionalSchedule.model_validate(professional["schedule"])
            if professional.get("schedule")
            else None
        )
        hours = [
            BusinessHoursDay.model_validate(row)
            for row in await self.schedule_repo.get_business_hours(tenant_id)
        ]
        blocks = [
            DateBlock.model_validate(row)
            for row in await self.schedule_repo.get_date_blocks(tenant_id, day, professional_id)
        ]
        booked = [
            BookedAppointment.model_validate(row)
            for row in await self._appointments_around(tenant_id, professional_id, day)
        ]

        shop_now = local_now(now, settings.shop_timezone)
        slots = compute_slots(
            day=day,
            schedule=schedule,
            business_hours=hours,
            date_blocks=blocks,
            appointments=booked,
            service_duration_minutes=service["duration_minutes"],
            now=now,
            today=shop_now.date(),
            granularity_minutes=settings.slot_granularity_minutes,
        )
        if day == shop_now.date():
            slots = [slot for slot in slots if slot > shop_now.time()]

        logger.debug(
            f"{len(slots)} free slots for professional {professional_id} on {day}"
        )
        return slots

    async def get_availability(
        self,
        tenant_id: str,
        professional_id: str,
        service_id: str,
        day: date,
        now: datetime,
    ) -> AvailabilityResponse:
        slots = await self.get_slots(tenant_id, professional_id, service_id, day, now)
        return AvailabilityResponse(
            date=day,
            professional_id=professional_id,
            service_id=service_id,
            slots=[slot.strftime("%H:%M") for slot in slots],
        )

    async def is_slot_free(
        self,
        tenant_id: str,
        professional_id: str,
        service_id: str,
        start: datetime,
        now: datetime,
    ) -> bool:
        """Check whether ``start`` is one of the bookable start times of its day."""
        slots = await self.get_slots(tenant_id, professional_id, service_id, start.date(), now)
        return start.time() in slots

    async def _appointments_around(
        self,
        tenant_id: str,
        professional_id: str,
        day: date,
    ) -> List[Mapping[str, Any]]:
        # Late appointments of the previous day can run past midnight
        previous = await self.appointment_repo.get_day_appointments(
            tenant_id, professional_id, day - timedelta(days=1)
        )
        current = await self.appointment_repo.get_day_appointments(
            tenant_id, professional_id, day
        )
        return previous + current
