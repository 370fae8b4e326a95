"""
Expired Hold Sweep

Batch job that cancels PIX holds whose payment window has passed and
tells the customer the slot was released.

Each row is cancelled with its own conditional update, so a sweep that
runs twice, or next to a payment watcher, cancels every hold at most
once. A failure on one row is recorded and the batch moves on.
"""

import logging
from typing import Dict

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.repository import AppointmentRepository, ScheduleRepository
from app.models.schemas import SweepResult
from app.services.appointment import utc_now
from app.services.notifier import NotificationDispatcher, Notifier, expired_hold_message
from app.services.reservation import Clock, expiry_notification

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Reclaims expired reservation holds."""

    def __init__(
        self,
        db_session: AsyncSession,
        notifier: Notifier,
        clock: Clock = utc_now,
    ):
        """
        Initialize the sweeper.

        Args:
            db_session: Async database session
            notifier: Messaging provider boundary
            clock: Returns the current naive UTC time
        """
        self.db = db_session
        self.dispatcher = NotificationDispatcher(notifier)
        self.clock = clock
        self.appointment_repo = AppointmentRepository(db_session)
        self.schedule_repo = ScheduleRepository(db_session)
        self._shop_names: Dict[str, str] = {}

    async def run(self) -> SweepResult:
        """
        Cancel every expired hold and notify its customer.

        Returns:
            SweepResult with the number of holds cancelled by this run,
            the number of messages delivered and the ids that failed
        """
        now = self.clock()
        result = SweepResult()

        expired = await self.appointment_repo.list_expired_holds(now)
        if not expired:
            logger.info("No expired holds found")
            return result

        logger.info(f"Found {len(expired)} expired holds to cancel")

        for hold in expired:
            try:
                won = await self.appointment_repo.cancel_hold(
                    hold["id"],
                    now,
                    only_if_expired=True,
                    notification=expiry_notification(hold),
                )
                if not won:
                    continue
                result.cancelled_count += 1

                delivered = await self.dispatcher.notify(
                    hold["customer_phone"],
                    expired_hold_message(
                        await self._shop_name(hold["tenant_id"]),
                        hold["customer_name"],
                        settings.hold_duration_minutes,
                    ),
                )
                if delivered:
                    result.notifications_sent += 1
            except Exception as e:
                logger.error(f"Error cancelling expired hold {hold['id']}: {e}", exc_info=True)
                result.failed.append(hold["id"])

        logger.info(
            f"Expiry sweep completed. Cancelled {result.cancelled_count} holds, "
            f"sent {result.notifications_sent} messages, {len(result.failed)} errors"
        )
        return result

    async def _shop_name(self, tenant_id: str) -> str:
        if tenant_id not in self._shop_names:
            tenant = await self.schedule_repo.get_tenant(tenant_id)
            self._shop_names[tenant_id] = (tenant or {}).get("name") or "Barbearia"
        return self._shop_names[tenant_id]
