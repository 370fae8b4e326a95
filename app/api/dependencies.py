"""
API Dependencies

Shared FastAPI dependencies and the translation of service errors into
HTTP responses.
"""

import logging

from fastapi import HTTPException, Request, status

from app.db.repository import DatabaseError
from app.services.appointment import (
    AppointmentNotFoundError,
    AppointmentServiceError,
    InvalidStateError,
    RaceLostError,
    SlotUnavailableError,
    utc_now,
)
from app.services.notifier import Notifier
from app.services.payment_gateway import GatewayError, PaymentGateway
from app.services.reservation import Clock, WatcherRegistry

logger = logging.getLogger(__name__)


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_watchers(request: Request) -> WatcherRegistry:
    return request.app.state.watchers


def get_clock() -> Clock:
    return utc_now


def to_http_error(error: Exception) -> HTTPException:
    """
    Map a service-layer exception to the HTTP error the client sees.

    Args:
        error: Exception raised by a service or repository

    Returns:
        HTTPException with the matching status code
    """
    if isinstance(error, AppointmentNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (SlotUnavailableError, InvalidStateError, RaceLostError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, GatewayError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(error, DatabaseError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST

    logger.warning(f"{type(error).__name__}: {error}")
    return HTTPException(status_code=code, detail=str(error))


HANDLED_ERRORS = (AppointmentServiceError, GatewayError, DatabaseError)
