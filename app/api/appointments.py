"""
Appointment Routes

Direct bookings paid at the shop, refunds of prepaid appointments and
the tenant's notification feed.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import (
    HANDLED_ERRORS,
    get_clock,
    get_gateway,
    get_notifier,
    to_http_error,
)
from app.api.reservations import get_coordinator
from app.db.repository import AppointmentRepository
from app.db.session import get_db_session
from app.models.schemas import (
    AppointmentResponse,
    DirectBookingRequest,
    RefundRequest,
    RefundResult,
)
from app.services.appointment import AppointmentNotFoundError
from app.services.notifier import Notifier
from app.services.payment_gateway import PaymentGateway
from app.services.refund import RefundCoordinator
from app.services.reservation import Clock, ReservationCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["appointments"])


@router.post(
    "/appointments",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_appointment(
    payload: DirectBookingRequest,
    coordinator: ReservationCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Book a slot that is paid at the shop."""
    try:
        return await coordinator.book_direct(
            payload.slot,
            payload.customer,
            confirmed=payload.confirmed,
        )
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e


@router.get("/appointments/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: str,
    db: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    try:
        appointment = await AppointmentRepository(db).get_appointment_by_id(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
        return appointment
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e


@router.post("/appointments/{appointment_id}/refund", response_model=RefundResult)
async def refund_appointment(
    appointment_id: str,
    payload: Optional[RefundRequest] = None,
    db: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> RefundResult:
    """
    Refund the PIX prepayment of a confirmed appointment and cancel it.

    Returns 409 when the appointment cannot be refunded and 502 when the
    payment provider refuses; in both cases nothing is changed.
    """
    reason = payload.reason if payload else None
    try:
        return await RefundCoordinator(db, gateway, notifier, clock).refund(appointment_id, reason)
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e


@router.get("/notifications")
async def list_notifications(
    tenant_id: str = Query(...),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db_session),
) -> List[Dict[str, Any]]:
    """Newest entries of a tenant's admin notification feed."""
    try:
        return await AppointmentRepository(db).list_notifications(tenant_id, limit)
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e
