"""
Database Repository Layer

Implements repository pattern for database operations.
Provides abstraction over SQLAlchemy for cleaner business logic.

Every status transition is a single conditional UPDATE guarded by the
status the caller expects; the affected row count tells the caller
whether it won. No read-then-write transitions live here.
"""

import datetime
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import (
    OCCUPYING_STATUSES,
    appointments,
    business_hours,
    date_blocks,
    notifications,
    professionals,
    services,
    tenants,
)

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class SlotConflictError(DatabaseError):
    """Insert rejected because another appointment already occupies the time range."""
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


class BaseRepository:
    """Base repository with common database operations."""

    def __init__(self, session: AsyncSession):
        """
        Initialize repository with database session.

        Args:
            session: AsyncSession instance for database operations
        """
        self.session = session

    async def execute_query(self, statement: Any) -> Any:
        """
        Execute a SQLAlchemy statement safely.

        Args:
            statement: Core select/insert/update statement

        Returns:
            Query result

        Raises:
            SlotConflictError: If a unique constraint rejected the write
            DatabaseError: If query execution fails
        """
        try:
            return await self.session.execute(statement)
        except IntegrityError as e:
            logger.warning(f"Integrity violation: {e}")
            raise SlotConflictError(f"Conflicting row: {str(e)}") from e
        except SQLAlchemyError as e:
            logger.error(f"Query execution failed: {e}")
            raise DatabaseError(f"Database operation failed: {str(e)}") from e

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Commit failed: {e}")
            raise DatabaseError(f"Commit failed: {str(e)}") from e

    async def rollback(self) -> None:
        await self.session.rollback()


class AppointmentRepository(BaseRepository):
    """Repository for appointment rows and their status transitions."""

    async def get_appointment_by_id(self, appointment_id: str) -> Optional[Dict[str, Any]]:
        """
        Get appointment details by ID.

        Args:
            appointment_id: Unique appointment identifier

        Returns:
            Appointment details or None if not found
        """
        result = await self.execute_query(
            select(appointments).where(appointments.c.id == appointment_id)
        )
        row = result.fetchone()
        return dict(row._mapping) if row else None

    async def find_customer_hold(
        self,
        tenant_id: str,
        professional_id: str,
        appointment_datetime: datetime.datetime,
        customer_phone: str,
    ) -> Optional[Dict[str, Any]]:
        """
        Find the newest outstanding hold of one customer on one slot.

        Returns:
            The pending_payment appointment, or None
        """
        statement = (
            select(appointments)
            .where(
                appointments.c.tenant_id == tenant_id,
                appointments.c.professional_id == professional_id,
                appointments.c.appointment_datetime == appointment_datetime,
                appointments.c.customer_phone == customer_phone,
                appointments.c.status == "pending_payment",
            )
            .order_by(appointments.c.created_at.desc())
            .limit(1)
        )
        result = await self.execute_query(statement)
        row = result.fetchone()
        return dict(row._mapping) if row else None

    async def get_day_appointments(
        self,
        tenant_id: str,
        professional_id: str,
        day: datetime.date,
    ) -> List[Dict[str, Any]]:
        """
        Get the appointments of a professional that may occupy slots on a day.

        Expired holds are returned too; callers decide occupancy at read time.

        Args:
            tenant_id: Tenant ID
            professional_id: Professional ID
            day: Local calendar day

        Returns:
            List of appointment dictionaries ordered by start time
        """
        day_start = datetime.datetime.combine(day, datetime.time.min)
        day_end = day_start + datetime.timedelta(days=1)

        statement = (
            select(appointments)
            .where(
                appointments.c.tenant_id == tenant_id,
                appointments.c.professional_id == professional_id,
                appointments.c.appointment_datetime >= day_start,
                appointments.c.appointment_datetime < day_end,
                appointments.c.status.in_(OCCUPYING_STATUSES),
            )
            .order_by(appointments.c.appointment_datetime)
        )
        result = await self.execute_query(statement)
        return [dict(row._mapping) for row in result.fetchall()]

    async def list_expired_holds(self, now: datetime.datetime) -> List[Dict[str, Any]]:
        """
        Get every hold whose expiration has passed and is still unpaid.

        Args:
            now: Current UTC time

        Returns:
            List of pending_payment appointments with hold_expires_at < now
        """
        statement = (
            select(appointments)
            .where(
                appointments.c.status == "pending_payment",
                appointments.c.hold_expires_at.is_not(None),
                appointments.c.hold_expires_at < now,
            )
            .order_by(appointments.c.hold_expires_at)
        )
        result = await self.execute_query(statement)
        return [dict(row._mapping) for row in result.fetchall()]

    async def list_expired_slot_holds(
        self,
        tenant_id: str,
        professional_id: str,
        appointment_datetime: datetime.datetime,
        now: datetime.datetime,
    ) -> List[Dict[str, Any]]:
        """Expired holds, of any customer, still sitting on one start time."""
        statement = select(appointments).where(
            appointments.c.tenant_id == tenant_id,
            appointments.c.professional_id == professional_id,
            appointments.c.appointment_datetime == appointment_datetime,
            appointments.c.status == "pending_payment",
            appointments.c.hold_expires_at < now,
        )
        result = await self.execute_query(statement)
        return [dict(row._mapping) for row in result.fetchall()]

    async def create_appointment(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new appointment row and commit.

        Args:
            values: Column values; ``id`` is generated when missing

        Returns:
            Dictionary containing the created appointment

        Raises:
            SlotConflictError: If the start time is already occupied
            DatabaseError: If appointment creation fails
        """
        values = {"id": _new_id(), **values}

        try:
            await self.execute_query(insert(appointments).values(**values))
            await self.commit()
        except DatabaseError:
            await self.rollback()
            raise

        return await self._created(values)

    async def create_appointment_if_free(
        self,
        values: Dict[str, Any],
        now: datetime.datetime,
    ) -> Dict[str, Any]:
        """
        Insert a new appointment unless an occupying one overlaps its range.

        The professional row is written first, which holds a row lock on
        PostgreSQL and the write lock on SQLite until the commit or rollback
        that ends this call. Concurrent bookings of one professional therefore
        run their overlap check and insert one after the other.

        Args:
            values: Column values; ``id`` is generated when missing
            now: Current UTC time, decides which holds are still live

        Returns:
            Dictionary containing the created appointment

        Raises:
            SlotConflictError: If an occupying appointment overlaps the range
            DatabaseError: If appointment creation fails
        """
        values = {"id": _new_id(), **values}
        start = values["appointment_datetime"]
        end = start + datetime.timedelta(minutes=values["duration_minutes"])

        try:
            await self.execute_query(
                update(professionals)
                .where(
                    professionals.c.id == values["professional_id"],
                    professionals.c.tenant_id == values["tenant_id"],
                )
                .values(booking_version=professionals.c.booking_version + 1)
            )
            taken = await self._find_overlapping(
                values["tenant_id"], values["professional_id"], start, end, now
            )
            if taken is not None:
                logger.warning(
                    f"Appointment {taken['id']} at {taken['appointment_datetime']} "
                    f"overlaps {start} - {end}"
                )
                raise SlotConflictError(
                    f"Range {start} - {end} overlaps appointment {taken['id']}"
                )
            await self.execute_query(insert(appointments).values(**values))
            await self.commit()
        except DatabaseError:
            await self.rollback()
            raise

        return await self._created(values)

    async def _find_overlapping(
        self,
        tenant_id: str,
        professional_id: str,
        start: datetime.datetime,
        end: datetime.datetime,
        now: datetime.datetime,
    ) -> Optional[Dict[str, Any]]:
        # Appointments never run past a day, so older starts cannot reach ``start``
        statement = select(appointments).where(
            appointments.c.tenant_id == tenant_id,
            appointments.c.professional_id == professional_id,
            appointments.c.appointment_datetime < end,
            appointments.c.appointment_datetime >= start - datetime.timedelta(days=1),
            or_(
                appointments.c.status.in_(("pending", "confirmed")),
                and_(
                    appointments.c.status == "pending_payment",
                    appointments.c.hold_expires_at >= now,
                ),
            ),
        )
        result = await self.execute_query(statement)
        for row in result.fetchall():
            booked_end = row.appointment_datetime + datetime.timedelta(
                minutes=row.duration_minutes
            )
            if booked_end > start:
                return dict(row._mapping)
        return None

    async def _created(self, values: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(
            f"Created appointment {values['id']} ({values['status']}) for professional "
            f"{values['professional_id']} at {values['appointment_datetime']}"
        )

        created = await self.get_appointment_by_id(values["id"])
        if created is None:
            raise DatabaseError("Failed to create appointment - no data returned")
        return created

    async def confirm_hold(
        self,
        appointment_id: str,
        payment_reference: str,
        now: datetime.datetime,
        notification: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Turn a hold into a confirmed appointment if it is still a hold.

        Clears hold_expires_at and keeps an existing payment_reference.

        Args:
            appointment_id: Hold ID
            payment_reference: Gateway intent that paid for it
            now: Current UTC time
            notification: Admin feed entry written in the same transaction

        Returns:
            True if this call performed the transition, False if another
            writer had already resolved the hold
        """
        current = await self.get_appointment_by_id(appointment_id)
        reference = (current or {}).get("payment_reference") or payment_reference

        statement = (
            update(appointments)
            .where(
                appointments.c.id == appointment_id,
                appointments.c.status == "pending_payment",
            )
            .values(
                status="confirmed",
                hold_expires_at=None,
                payment_reference=reference,
                updated_at=now,
            )
        )
        return await self._transition(statement, appointment_id, "confirmed", notification)

    async def cancel_hold(
        self,
        appointment_id: str,
        now: datetime.datetime,
        only_if_expired: bool = False,
        notification: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Cancel a hold if it is still a hold.

        Args:
            appointment_id: Hold ID
            now: Current UTC time
            only_if_expired: Also require hold_expires_at < now
            notification: Admin feed entry written in the same transaction

        Returns:
            True if this call cancelled the hold, False otherwise
        """
        conditions = [
            appointments.c.id == appointment_id,
            appointments.c.status == "pending_payment",
        ]
        if only_if_expired:
            conditions.append(appointments.c.hold_expires_at < now)

        statement = (
            update(appointments)
            .where(and_(*conditions))
            .values(status="cancelled", hold_expires_at=None, updated_at=now)
        )
        return await self._transition(statement, appointment_id, "cancelled", notification)

    async def mark_refunded(
        self,
        appointment_id: str,
        refund_amount: Any,
        reason: str,
        now: datetime.datetime,
        notification: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Cancel a confirmed appointment whose prepayment was returned.

        Returns:
            True if the row was still confirmed and unrefunded
        """
        statement = (
            update(appointments)
            .where(
                appointments.c.id == appointment_id,
                appointments.c.status == "confirmed",
                appointments.c.refunded.is_(False),
            )
            .values(
                status="cancelled",
                refunded=True,
                refunded_at=now,
                refund_amount=refund_amount,
                refund_reason=reason,
                updated_at=now,
            )
        )
        return await self._transition(statement, appointment_id, "refunded", notification)

    async def _transition(
        self,
        statement: Any,
        appointment_id: str,
        label: str,
        notification: Optional[Dict[str, Any]],
    ) -> bool:
        try:
            result = await self.execute_query(statement)
            won = result.rowcount == 1
            if won and notification:
                await self.execute_query(
                    insert(notifications).values(
                        id=_new_id(),
                        appointment_id=appointment_id,
                        **notification,
                    )
                )
            await self.commit()
        except DatabaseError as e:
            await self.rollback()
            logger.error(f"Failed to mark appointment {appointment_id} {label}: {e}")
            raise

        if won:
            logger.info(f"Appointment {appointment_id} -> {label}")
        else:
            logger.info(f"Appointment {appointment_id} already resolved, {label} skipped")
        return won

    async def list_notifications(self, tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Get the newest admin feed entries of a tenant.

        Args:
            tenant_id: Tenant ID
            limit: Maximum number of entries

        Returns:
            List of notification dictionaries, newest first
        """
        statement = (
            select(notifications)
            .where(notifications.c.tenant_id == tenant_id)
            .order_by(notifications.c.created_at.desc())
            .limit(limit)
        )
        result = await self.execute_query(statement)
        return [dict(row._mapping) for row in result.fetchall()]


class ScheduleRepository(BaseRepository):
    """Read-only access to tenant, staff, service and calendar configuration."""

    async def get_tenant(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        result = await self.execute_query(select(tenants).where(tenants.c.id == tenant_id))
        row = result.fetchone()
        return dict(row._mapping) if row else None

    async def get_professional(
        self,
        tenant_id: str,
        professional_id: str,
    ) -> Optional[Dict[str, Any]]:
        """
        Get an active professional of a tenant.

        Returns:
            Professional details (including the raw ``schedule`` JSON) or None
        """
        statement = select(professionals).where(
            professionals.c.id == professional_id,
            professionals.c.tenant_id == tenant_id,
            professionals.c.active.is_(True),
        )
        result = await self.execute_query(statement)
        row = result.fetchone()
        return dict(row._mapping) if row else None

    async def get_service(self, tenant_id: str, service_id: str) -> Optional[Dict[str, Any]]:
        statement = select(services).where(
            services.c.id == service_id,
            services.c.tenant_id == tenant_id,
            services.c.active.is_(True),
        )
        result = await self.execute_query(statement)
        row = result.fetchone()
        return dict(row._mapping) if row else None

    async def get_business_hours(self, tenant_id: str) -> List[Dict[str, Any]]:
        statement = (
            select(business_hours)
            .where(business_hours.c.tenant_id == tenant_id)
            .order_by(business_hours.c.day_of_week)
        )
        result = await self.execute_query(statement)
        return [dict(row._mapping) for row in result.fetchall()]

    async def get_date_blocks(
        self,
        tenant_id: str,
        day: datetime.date,
        professional_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Get the closures of one day that apply to a professional.

        Tenant-wide blocks (professional_id NULL) always apply.
        """
        applies_to = date_blocks.c.professional_id.is_(None)
        if professional_id:
            applies_to = applies_to | (date_blocks.c.professional_id == professional_id)

        statement = select(date_blocks).where(
            date_blocks.c.tenant_id == tenant_id,
            date_blocks.c.date == day,
            applies_to,
        )
        result = await self.execute_query(statement)
        return [dict(row._mapping) for row in result.fetchall()]
