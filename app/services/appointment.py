"""
Appointment Service

Lifecycle rules of an appointment and of the reservation hold it starts as.

An appointment paid online begins life as a hold (``pending_payment``)
that claims its slot only until ``hold_expires_at``. The coordinator and
the expiry sweeper move holds to ``confirmed`` or ``cancelled``; this
module decides whether a row still occupies its slot at a given instant.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

from app.models.schemas import AppointmentStatus

logger = logging.getLogger(__name__)


class AppointmentServiceError(Exception):
    """Custom exception for appointment service errors."""
    pass


class InvalidStateError(AppointmentServiceError):
    """The appointment is not in a state that allows the operation."""
    pass


class SlotUnavailableError(AppointmentServiceError):
    """Another appointment or live hold already occupies the slot."""
    pass


class AppointmentNotFoundError(AppointmentServiceError):
    pass


class RaceLostError(AppointmentServiceError):
    """A concurrent writer resolved the appointment first."""
    pass


CENTS = Decimal("0.01")


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the way timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hold_expires_at(now: datetime, hold_minutes: int) -> datetime:
    return now + timedelta(minutes=hold_minutes)


def is_hold_live(appointment: Mapping[str, Any], now: datetime) -> bool:
    """
    Check whether a ``pending_payment`` row still claims its slot.

    A hold is live through the instant it expires and vacant right after.

    Args:
        appointment: Appointment row
        now: Current UTC time

    Returns:
        True for an unexpired hold, False for anything else
    """
    if appointment["status"] != AppointmentStatus.PENDING_PAYMENT.value:
        return False
    expires_at: Optional[datetime] = appointment.get("hold_expires_at")
    return expires_at is not None and now <= expires_at


def is_hold_expired(appointment: Mapping[str, Any], now: datetime) -> bool:
    if appointment["status"] != AppointmentStatus.PENDING_PAYMENT.value:
        return False
    expires_at: Optional[datetime] = appointment.get("hold_expires_at")
    return expires_at is None or now > expires_at


def occupies_slot(appointment: Mapping[str, Any], now: datetime) -> bool:
    """
    Check whether an appointment blocks its time range at ``now``.

    ``pending`` and ``confirmed`` always occupy; ``pending_payment`` only
    while the hold is live; ``completed`` and ``cancelled`` never do.
    """
    status = appointment["status"]
    if status in (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value):
        return True
    return is_hold_live(appointment, now)


def compute_prepaid_amount(price: Decimal, fraction: float) -> Decimal:
    """
    Amount charged up front to secure a hold.

    Args:
        price: Full service price
        fraction: Share of the price charged, e.g. 0.5

    Returns:
        Amount rounded to cents

    Example:
        >>> compute_prepaid_amount(Decimal("100.00"), 0.5)
        Decimal('50.00')
    """
    amount = Decimal(price) * Decimal(str(fraction))
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
