"""
Reservation Routes

HTTP entry points of the PIX booking wizard: place a hold, poll its
payment and give it up.
"""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import (
    HANDLED_ERRORS,
    get_clock,
    get_gateway,
    get_notifier,
    get_watchers,
    to_http_error,
)
from app.db.session import get_db_session
from app.models.schemas import HoldResult, PollResult, ReservationRequest
from app.services.notifier import Notifier
from app.services.payment_gateway import PaymentGateway
from app.services.reservation import Clock, ReservationCoordinator, WatcherRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reservations", tags=["reservations"])


def get_coordinator(
    db: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> ReservationCoordinator:
    return ReservationCoordinator(db, gateway, notifier, clock)


@router.post("", response_model=HoldResult, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationRequest,
    response: Response,
    coordinator: ReservationCoordinator = Depends(get_coordinator),
    watchers: WatcherRegistry = Depends(get_watchers),
) -> HoldResult:
    """
    Place a hold on a slot and return the PIX code to pay it.

    Repeating the request for the same slot and phone while the hold is
    live returns the same hold with status 200. A payment watcher is
    started for the hold either way.
    """
    try:
        hold = await coordinator.begin_reservation(payload.slot, payload.customer)
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e

    if hold.reused:
        response.status_code = status.HTTP_200_OK
    watchers.watch(hold.hold_id)
    return hold


@router.get("/{hold_id}/status", response_model=PollResult)
async def reservation_status(
    hold_id: str,
    coordinator: ReservationCoordinator = Depends(get_coordinator),
) -> PollResult:
    """Run one payment check for a hold."""
    try:
        return await coordinator.poll_status(hold_id)
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e


@router.post("/{hold_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_reservation(
    hold_id: str,
    coordinator: ReservationCoordinator = Depends(get_coordinator),
    watchers: WatcherRegistry = Depends(get_watchers),
) -> Response:
    """Give up a hold before paying it."""
    try:
        await coordinator.cancel_reservation(hold_id)
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e

    await watchers.stop(hold_id)
    logger.info(f"Hold {hold_id} cancelled by customer")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
