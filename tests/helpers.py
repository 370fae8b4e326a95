"""Constants and database helpers shared by the test modules."""

from datetime import datetime, timedelta

from sqlalchemy import select

from app.db.tables import appointments, notifications

TENANT_ID = "tenant-1"
PROFESSIONAL_ID = "prof-1"
SERVICE_ID = "service-1"

# 09:00 in Sao Paulo on the day of the booked slot
START = datetime(2024, 6, 1, 12, 0)
SLOT_AT = datetime(2024, 6, 1, 14, 0)


class FakeClock:
    """Naive UTC clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


async def fetch_appointment(session_factory, appointment_id):
    async with session_factory() as session:
        result = await session.execute(
            select(appointments).where(appointments.c.id == appointment_id)
        )
        row = result.fetchone()
        return dict(row._mapping) if row else None


async def count_appointments(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(appointments))
        return len(result.fetchall())


async def notification_types(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(notifications.c.type))
        return sorted(row[0] for row in result.fetchall())
