"""
Reservation Service

Drives a PIX-paid booking from the moment the customer picks a slot
until the payment is confirmed, rejected or the hold runs out.

Every status change goes through a conditional update in the
repository: whoever flips ``pending_payment`` first wins, and the loser
re-reads the row to report what actually happened.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.db.repository import (
    AppointmentRepository,
    DatabaseError,
    ScheduleRepository,
    SlotConflictError,
)
from app.models.schemas import (
    AppointmentStatus,
    CustomerInfo,
    HoldResult,
    NotificationType,
    PaymentMethod,
    PaymentStatus,
    PollOutcome,
    PollResult,
    SlotInfo,
)
from app.services.appointment import (
    AppointmentNotFoundError,
    AppointmentServiceError,
    InvalidStateError,
    RaceLostError,
    SlotUnavailableError,
    compute_prepaid_amount,
    hold_expires_at,
    is_hold_expired,
    is_hold_live,
    utc_now,
)
from app.services.availability import AvailabilityService
from app.services.notifier import (
    NotificationDispatcher,
    Notifier,
    confirmed_customer_message,
    confirmed_professional_message,
    expired_hold_message,
    pending_payment_message,
)
from app.services.payment_gateway import GatewayError, PaymentGateway

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

TERMINAL_OUTCOMES = frozenset(
    {PollOutcome.CONFIRMED, PollOutcome.EXPIRED, PollOutcome.REJECTED}
)


def expiry_notification(appointment: Dict[str, Any]) -> Dict[str, Any]:
    """Admin feed entry for a hold that ran out of time."""
    return {
        "tenant_id": appointment["tenant_id"],
        "type": NotificationType.PAYMENT_EXPIRED.value,
        "title": "Pagamento PIX expirado",
        "message": (
            f"O agendamento de {appointment['customer_name']} para "
            f"{appointment['appointment_datetime']:%d/%m/%Y %H:%M} foi cancelado "
            f"por falta de pagamento."
        ),
    }


class ReservationCoordinator:
    """
    Service for the hold, poll and confirm cycle of PIX reservations.

    Collaborators are injected so the same coordinator runs behind the
    HTTP API, inside payment watchers and in tests.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PaymentGateway,
        notifier: Notifier,
        clock: Clock = utc_now,
    ):
        """
        Initialize ReservationCoordinator.

        Args:
            db_session: Async database session
            gateway: Payment provider boundary
            notifier: Messaging provider boundary
            clock: Returns the current naive UTC time
        """
        self.db = db_session
        self.gateway = gateway
        self.dispatcher = NotificationDispatcher(notifier)
        self.clock = clock
        self.appointment_repo = AppointmentRepository(db_session)
        self.schedule_repo = ScheduleRepository(db_session)
        self.availability = AvailabilityService(db_session)

    async def begin_reservation(self, slot: SlotInfo, customer: CustomerInfo) -> HoldResult:
        """
        Place a hold on a slot and request the PIX payment for it.

        Calling again for the same slot and phone while the hold is live
        returns that hold with its stored payment; an expired hold of the
        same customer is cancelled first and replaced.

        Args:
            slot: Tenant, professional, service and start time
            customer: Name and phone of the customer

        Returns:
            HoldResult describing the (new or reused) hold

        Raises:
            AppointmentNotFoundError: If the tenant, professional or service is unknown
            SlotUnavailableError: If the slot is taken or outside working hours
            GatewayError: If the payment could not be created; no hold is stored
        """
        now = self.clock()
        context = await self._load_context(slot)

        existing = await self.appointment_repo.find_customer_hold(
            slot.tenant_id,
            slot.professional_id,
            slot.appointment_datetime,
            customer.phone,
        )
        if existing is not None:
            if is_hold_live(existing, now):
                logger.info(f"Reusing live hold {existing['id']} for {customer.phone}")
                return self._hold_result(existing, reused=True)
            await self._expire_hold(existing, now, context["tenant"]["name"])

        for stale in await self.appointment_repo.list_expired_slot_holds(
            slot.tenant_id, slot.professional_id, slot.appointment_datetime, now
        ):
            await self._expire_hold(stale, now, context["tenant"]["name"])

        if not await self.availability.is_slot_free(
            slot.tenant_id,
            slot.professional_id,
            slot.service_id,
            slot.appointment_datetime,
            now,
        ):
            raise SlotUnavailableError(
                f"Slot {slot.appointment_datetime} of professional "
                f"{slot.professional_id} is not available"
            )

        service = context["service"]
        amount = compute_prepaid_amount(service["price"], settings.prepayment_fraction)
        hold_id = str(uuid.uuid4())

        intent = await self.gateway.create_intent(
            amount=amount,
            description=(
                f"{service['name']} - {context['tenant']['name']} - "
                f"{slot.appointment_datetime:%d/%m/%Y %H:%M}"
            ),
            payer={"name": customer.name, "email": customer.email},
            external_reference=hold_id,
        )

        created_at = self.clock()
        try:
            hold = await self.appointment_repo.create_appointment_if_free(
                {
                    "id": hold_id,
                    "tenant_id": slot.tenant_id,
                    "professional_id": slot.professional_id,
                    "service_id": slot.service_id,
                    "appointment_datetime": slot.appointment_datetime,
                    "duration_minutes": service["duration_minutes"],
                    "customer_name": customer.name,
                    "customer_phone": customer.phone,
                    "status": AppointmentStatus.PENDING_PAYMENT.value,
                    "payment_method": PaymentMethod.ONLINE.value,
                    "total_price": service["price"],
                    "prepaid_amount": amount,
                    "hold_expires_at": hold_expires_at(created_at, settings.hold_duration_minutes),
                    "payment_reference": intent.intent_id,
                    "payment_qr_code": intent.qr_payload,
                    "created_at": created_at,
                },
                now=created_at,
            )
        except SlotConflictError as e:
            logger.warning(
                f"Lost insert race for {slot.appointment_datetime}, "
                f"payment {intent.intent_id} left unused"
            )
            winner = await self.appointment_repo.find_customer_hold(
                slot.tenant_id,
                slot.professional_id,
                slot.appointment_datetime,
                customer.phone,
            )
            if winner is not None and is_hold_live(winner, self.clock()):
                return self._hold_result(winner, reused=True)
            raise SlotUnavailableError(
                f"Slot {slot.appointment_datetime} was taken concurrently"
            ) from e

        await self.dispatcher.notify(
            customer.phone,
            pending_payment_message(
                shop_name=context["tenant"]["name"],
                customer_name=customer.name,
                appointment_datetime=slot.appointment_datetime,
                amount=amount,
                qr_payload=intent.qr_payload,
                hold_minutes=settings.hold_duration_minutes,
            ),
        )

        logger.info(f"Hold {hold_id} placed until {hold['hold_expires_at']}")
        return self._hold_result(hold, reused=False)

    async def poll_status(self, hold_id: str) -> PollResult:
        """
        Run one payment check for a hold.

        The hold's expiry is checked before the gateway is asked, so a
        payment that lands after the deadline does not revive the slot.

        Args:
            hold_id: Appointment ID of the hold

        Returns:
            PollResult with the outcome of this cycle

        Raises:
            AppointmentNotFoundError: If the hold does not exist
            InvalidStateError: If the appointment was never a PIX hold
            GatewayError: If the payment status could not be fetched
        """
        appointment = await self._get(hold_id)

        settled = self._settled_outcome(appointment)
        if settled is not None:
            return settled

        now = self.clock()
        if is_hold_expired(appointment, now):
            tenant = await self.schedule_repo.get_tenant(appointment["tenant_id"])
            await self._expire_hold(appointment, now, (tenant or {}).get("name", ""))
            return await self._reread_outcome(hold_id)

        payment_status = await self.gateway.get_status(appointment["payment_reference"])

        if payment_status == PaymentStatus.APPROVED:
            return await self._confirm(appointment)

        if payment_status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED):
            logger.info(f"Payment for hold {hold_id} {payment_status.value}, hold kept")
            return PollResult(
                hold_id=hold_id,
                outcome=PollOutcome.REJECTED,
                status=AppointmentStatus.PENDING_PAYMENT,
                expires_at=appointment["hold_expires_at"],
            )

        return PollResult(
            hold_id=hold_id,
            outcome=PollOutcome.STILL_PENDING,
            status=AppointmentStatus.PENDING_PAYMENT,
            expires_at=appointment["hold_expires_at"],
        )

    async def cancel_reservation(self, hold_id: str) -> None:
        """
        Cancel a hold at the customer's request, without messaging anyone.

        Raises:
            AppointmentNotFoundError: If the hold does not exist
            InvalidStateError: If it is no longer pending payment
            RaceLostError: If a concurrent writer resolved it first
        """
        appointment = await self._get(hold_id)
        if appointment["status"] != AppointmentStatus.PENDING_PAYMENT.value:
            raise InvalidStateError(
                f"Appointment {hold_id} is {appointment['status']}, only holds can be cancelled"
            )

        won = await self.appointment_repo.cancel_hold(
            hold_id,
            self.clock(),
            notification={
                "tenant_id": appointment["tenant_id"],
                "type": NotificationType.APPOINTMENT_CANCELLED.value,
                "title": "Agendamento cancelado",
                "message": (
                    f"{appointment['customer_name']} desistiu do horário de "
                    f"{appointment['appointment_datetime']:%d/%m/%Y %H:%M}."
                ),
            },
        )
        if not won:
            raise RaceLostError(f"Hold {hold_id} was resolved before it could be cancelled")

    async def book_direct(
        self,
        slot: SlotInfo,
        customer: CustomerInfo,
        confirmed: bool = False,
    ) -> Dict[str, Any]:
        """
        Book a slot paid at the shop, without a PIX hold.

        Args:
            slot: Tenant, professional, service and start time
            customer: Name and phone of the customer
            confirmed: Create the appointment as confirmed instead of pending

        Returns:
            Created appointment

        Raises:
            AppointmentNotFoundError: If the tenant, professional or service is unknown
            SlotUnavailableError: If the slot is taken or outside working hours
        """
        now = self.clock()
        context = await self._load_context(slot)

        for stale in await self.appointment_repo.list_expired_slot_holds(
            slot.tenant_id, slot.professional_id, slot.appointment_datetime, now
        ):
            await self._expire_hold(stale, now, context["tenant"]["name"])

        if not await self.availability.is_slot_free(
            slot.tenant_id,
            slot.professional_id,
            slot.service_id,
            slot.appointment_datetime,
            now,
        ):
            raise SlotUnavailableError(
                f"Slot {slot.appointment_datetime} of professional "
                f"{slot.professional_id} is not available"
            )

        status = AppointmentStatus.CONFIRMED if confirmed else AppointmentStatus.PENDING
        service = context["service"]
        try:
            return await self.appointment_repo.create_appointment_if_free(
                {
                    "tenant_id": slot.tenant_id,
                    "professional_id": slot.professional_id,
                    "service_id": slot.service_id,
                    "appointment_datetime": slot.appointment_datetime,
                    "duration_minutes": service["duration_minutes"],
                    "customer_name": customer.name,
                    "customer_phone": customer.phone,
                    "status": status.value,
                    "payment_method": PaymentMethod.LOCAL.value,
                    "total_price": service["price"],
                    "prepaid_amount": 0,
                    "created_at": now,
                },
                now=now,
            )
        except SlotConflictError as e:
            raise SlotUnavailableError(
                f"Slot {slot.appointment_datetime} was taken concurrently"
            ) from e

    async def _confirm(self, appointment: Dict[str, Any]) -> PollResult:
        hold_id = appointment["id"]
        won = await self.appointment_repo.confirm_hold(
            hold_id,
            appointment["payment_reference"],
            self.clock(),
            notification={
                "tenant_id": appointment["tenant_id"],
                "type": NotificationType.PAYMENT_CONFIRMED.value,
                "title": "Pagamento PIX confirmado",
                "message": (
                    f"{appointment['customer_name']} pagou {appointment['prepaid_amount']} "
                    f"pelo horário de {appointment['appointment_datetime']:%d/%m/%Y %H:%M}."
                ),
            },
        )
        if not won:
            outcome = await self._reread_outcome(hold_id)
            if outcome.outcome == PollOutcome.EXPIRED:
                logger.error(
                    f"Payment {appointment['payment_reference']} approved after hold "
                    f"{hold_id} was cancelled; refund needed"
                )
            return outcome

        await self._send_confirmations(appointment)
        return PollResult(
            hold_id=hold_id,
            outcome=PollOutcome.CONFIRMED,
            status=AppointmentStatus.CONFIRMED,
        )

    async def _send_confirmations(self, appointment: Dict[str, Any]) -> None:
        tenant = await self.schedule_repo.get_tenant(appointment["tenant_id"]) or {}
        professional = await self.schedule_repo.get_professional(
            appointment["tenant_id"], appointment["professional_id"]
        ) or {}
        service = await self.schedule_repo.get_service(
            appointment["tenant_id"], appointment["service_id"]
        ) or {}

        await self.dispatcher.notify(
            appointment["customer_phone"],
            confirmed_customer_message(
                shop_name=tenant.get("name", ""),
                customer_name=appointment["customer_name"],
                professional_name=professional.get("name", ""),
                service_name=service.get("name", ""),
                appointment_datetime=appointment["appointment_datetime"],
            ),
        )
        await self.dispatcher.notify(
            professional.get("phone"),
            confirmed_professional_message(
                customer_name=appointment["customer_name"],
                customer_phone=appointment["customer_phone"],
                service_name=service.get("name", ""),
                appointment_datetime=appointment["appointment_datetime"],
            ),
        )

    async def _expire_hold(
        self,
        appointment: Dict[str, Any],
        now: datetime,
        shop_name: str,
    ) -> bool:
        won = await self.appointment_repo.cancel_hold(
            appointment["id"],
            now,
            only_if_expired=True,
            notification=expiry_notification(appointment),
        )
        if won:
            await self.dispatcher.notify(
                appointment["customer_phone"],
                expired_hold_message(
                    shop_name,
                    appointment["customer_name"],
                    settings.hold_duration_minutes,
                ),
            )
        return won

    async def _reread_outcome(self, hold_id: str) -> PollResult:
        appointment = await self._get(hold_id)
        settled = self._settled_outcome(appointment)
        if settled is not None:
            return settled
        # Still pending_payment: someone extended it, keep polling
        return PollResult(
            hold_id=hold_id,
            outcome=PollOutcome.STILL_PENDING,
            status=AppointmentStatus.PENDING_PAYMENT,
            expires_at=appointment["hold_expires_at"],
        )

    def _settled_outcome(self, appointment: Dict[str, Any]) -> Optional[PollResult]:
        status = appointment["status"]
        if status in (AppointmentStatus.CONFIRMED.value, AppointmentStatus.COMPLETED.value):
            return PollResult(
                hold_id=appointment["id"],
                outcome=PollOutcome.CONFIRMED,
                status=AppointmentStatus(status),
            )
        if status == AppointmentStatus.CANCELLED.value:
            return PollResult(
                hold_id=appointment["id"],
                outcome=PollOutcome.EXPIRED,
                status=AppointmentStatus.CANCELLED,
            )
        if status != AppointmentStatus.PENDING_PAYMENT.value:
            raise InvalidStateError(f"Appointment {appointment['id']} is not a PIX hold")
        return None

    async def _get(self, appointment_id: str) -> Dict[str, Any]:
        appointment = await self.appointment_repo.get_appointment_by_id(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    async def _load_context(self, slot: SlotInfo) -> Dict[str, Dict[str, Any]]:
        tenant = await self.schedule_repo.get_tenant(slot.tenant_id)
        if tenant is None:
            raise AppointmentNotFoundError(f"Tenant {slot.tenant_id} not found")
        professional = await self.schedule_repo.get_professional(
            slot.tenant_id, slot.professional_id
        )
        if professional is None:
            raise AppointmentNotFoundError(f"Professional {slot.professional_id} not found")
        service = await self.schedule_repo.get_service(slot.tenant_id, slot.service_id)
        if service is None:
            raise AppointmentNotFoundError(f"Service {slot.service_id} not found")
        return {"tenant": tenant, "professional": professional, "service": service}

    @staticmethod
    def _hold_result(hold: Dict[str, Any], reused: bool) -> HoldResult:
        return HoldResult(
            hold_id=hold["id"],
            payment_reference=hold["payment_reference"],
            qr_payload=hold.get("payment_qr_code"),
            expires_at=hold["hold_expires_at"],
            prepaid_amount=hold["prepaid_amount"],
            reused=reused,
        )


class PaymentWatcher:
    """
    Polls one hold until its payment settles.

    Owns a single asyncio task. Each cycle opens its own session, so a
    watcher never keeps a connection across sleeps. Stopping the watcher
    cancels the task; the hold itself is left alone and the expiry sweep
    reclaims it if nobody pays.
    """

    def __init__(
        self,
        hold_id: str,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: Notifier,
        interval: Optional[float] = None,
        clock: Clock = utc_now,
        on_done: Optional[Callable[[str], None]] = None,
    ):
        self.hold_id = hold_id
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.interval = interval if interval is not None else settings.poll_interval_seconds
        self.clock = clock
        self.on_done = on_done
        self.result: Optional[PollResult] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"payment-watcher-{self.hold_id}")
        return self._task

    async def stop(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def wait(self) -> Optional[PollResult]:
        if self._task is None:
            return self.result
        return await self._task

    async def poll_once(self) -> PollResult:
        async with self.session_factory() as session:
            coordinator = ReservationCoordinator(session, self.gateway, self.notifier, self.clock)
            return await coordinator.poll_status(self.hold_id)

    async def _run(self) -> Optional[PollResult]:
        logger.info(f"Watching payment of hold {self.hold_id} every {self.interval}s")
        try:
            while True:
                try:
                    result = await self.poll_once()
                except (GatewayError, DatabaseError) as e:
                    logger.warning(f"Poll of hold {self.hold_id} failed, retrying: {e}")
                else:
                    if result.outcome in TERMINAL_OUTCOMES:
                        self.result = result
                        logger.info(f"Hold {self.hold_id} settled: {result.outcome.value}")
                        return result
                await asyncio.sleep(self.interval)
        except AppointmentServiceError as e:
            logger.error(f"Stopped watching hold {self.hold_id}: {e}")
            return None
        finally:
            if self.on_done is not None:
                self.on_done(self.hold_id)


class WatcherRegistry:
    """Owns every payment watcher of the process."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: Notifier,
        interval: Optional[float] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.interval = interval
        self.clock = clock
        self._watchers: Dict[str, PaymentWatcher] = {}

    def __len__(self) -> int:
        return len(self._watchers)

    def __contains__(self, hold_id: str) -> bool:
        return hold_id in self._watchers

    def watch(self, hold_id: str) -> PaymentWatcher:
        """Start watching a hold, or return the watcher already on it."""
        watcher = self._watchers.get(hold_id)
        if watcher is not None and watcher.running:
            return watcher

        watcher = PaymentWatcher(
            hold_id,
            self.session_factory,
            self.gateway,
            self.notifier,
            interval=self.interval,
            clock=self.clock,
            on_done=self._forget,
        )
        self._watchers[hold_id] = watcher
        watcher.start()
        return watcher

    async def stop(self, hold_id: str) -> None:
        watcher = self._watchers.get(hold_id)
        if watcher is not None:
            await watcher.stop()

    async def stop_all(self) -> None:
        watchers = list(self._watchers.values())
        for watcher in watchers:
            await watcher.stop()
        self._watchers.clear()
        if watchers:
            logger.info(f"Stopped {len(watchers)} payment watchers")

    def _forget(self, hold_id: str) -> None:
        self._watchers.pop(hold_id, None)
