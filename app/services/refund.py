"""
Refund Service

Returns the PIX prepayment of a confirmed appointment and cancels it.
The provider refund happens first; the appointment is only touched once
the money is on its way back.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.repository import AppointmentRepository, ScheduleRepository
from app.models.schemas import AppointmentStatus, NotificationType, RefundResult
from app.services.appointment import (
    AppointmentNotFoundError,
    InvalidStateError,
    RaceLostError,
    utc_now,
)
from app.services.notifier import NotificationDispatcher, Notifier, refund_message
from app.services.payment_gateway import PaymentGateway
from app.services.reservation import Clock

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Cancelado pelo estabelecimento"


class RefundCoordinator:
    """Admin-initiated refund of prepaid appointments."""

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PaymentGateway,
        notifier: Notifier,
        clock: Clock = utc_now,
    ):
        self.db = db_session
        self.gateway = gateway
        self.dispatcher = NotificationDispatcher(notifier)
        self.clock = clock
        self.appointment_repo = AppointmentRepository(db_session)
        self.schedule_repo = ScheduleRepository(db_session)

    async def refund(self, appointment_id: str, reason: Optional[str] = None) -> RefundResult:
        """
        Refund a confirmed appointment's prepayment and cancel it.

        Args:
            appointment_id: Appointment to refund
            reason: Shown in the admin feed and stored on the row

        Returns:
            RefundResult of the cancelled appointment

        Raises:
            AppointmentNotFoundError: If the appointment does not exist
            InvalidStateError: If it is not confirmed, has no payment or
                was already refunded
            GatewayError: If the provider refused; nothing was changed
            RaceLostError: If the provider refunded but another writer
                changed the appointment in the meantime
        """
        appointment = await self.appointment_repo.get_appointment_by_id(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")

        if appointment["refunded"]:
            raise InvalidStateError(f"Appointment {appointment_id} was already refunded")
        if appointment["status"] != AppointmentStatus.CONFIRMED.value:
            raise InvalidStateError(
                f"Appointment {appointment_id} is {appointment['status']}, "
                f"only confirmed appointments can be refunded"
            )
        if not appointment["payment_reference"]:
            raise InvalidStateError(f"Appointment {appointment_id} has no PIX payment")

        reason = reason or DEFAULT_REASON
        amount = Decimal(appointment["prepaid_amount"])

        await self.gateway.refund(appointment["payment_reference"], reason, amount)

        won = await self.appointment_repo.mark_refunded(
            appointment_id,
            amount,
            reason,
            self.clock(),
            notification={
                "tenant_id": appointment["tenant_id"],
                "type": NotificationType.REFUND_PROCESSED.value,
                "title": "Estorno realizado",
                "message": (
                    f"Estorno de {amount} para {appointment['customer_name']} "
                    f"({appointment['appointment_datetime']:%d/%m/%Y %H:%M}): {reason}"
                ),
            },
        )
        if not won:
            logger.error(
                f"Payment {appointment['payment_reference']} refunded but appointment "
                f"{appointment_id} changed concurrently and was not updated"
            )
            raise RaceLostError(
                f"Refund sent but appointment {appointment_id} was modified concurrently"
            )

        tenant = await self.schedule_repo.get_tenant(appointment["tenant_id"]) or {}
        await self.dispatcher.notify(
            appointment["customer_phone"],
            refund_message(
                tenant.get("name", ""),
                appointment["customer_name"],
                appointment["appointment_datetime"],
                amount,
            ),
        )

        logger.info(f"Appointment {appointment_id} refunded ({amount})")
        return RefundResult(
            appointment_id=appointment_id,
            refund_amount=amount,
            status=AppointmentStatus.CANCELLED,
            refunded=True,
        )
