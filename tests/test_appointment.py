"""
Tests for hold occupancy rules
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.services.appointment import (
    compute_prepaid_amount,
    is_hold_expired,
    is_hold_live,
    occupies_slot,
)

NOW = datetime(2024, 6, 1, 12, 0)


def row(status, expires_at=None):
    return {"id": "a1", "status": status, "hold_expires_at": expires_at}


def test_hold_live_until_expiry_instant():
    hold = row("pending_payment", NOW)

    assert is_hold_live(hold, NOW - timedelta(minutes=1))
    assert is_hold_live(hold, NOW)
    assert not is_hold_live(hold, NOW + timedelta(microseconds=1))
    assert is_hold_expired(hold, NOW + timedelta(microseconds=1))


def test_only_holds_expire():
    assert not is_hold_expired(row("confirmed"), NOW)
    assert not is_hold_live(row("confirmed"), NOW)


@pytest.mark.parametrize(
    "status, expires_at, expected",
    [
        ("pending", None, True),
        ("confirmed", None, True),
        ("pending_payment", NOW + timedelta(minutes=5), True),
        ("pending_payment", NOW - timedelta(minutes=5), False),
        ("completed", None, False),
        ("cancelled", None, False),
    ],
)
def test_occupies_slot(status, expires_at, expected):
    assert occupies_slot(row(status, expires_at), NOW) is expected


@pytest.mark.parametrize(
    "price, fraction, expected",
    [
        (Decimal("100.00"), 0.5, Decimal("50.00")),
        (Decimal("45.00"), 0.5, Decimal("22.50")),
        (Decimal("33.33"), 0.5, Decimal("16.67")),
        (Decimal("80.00"), 1.0, Decimal("80.00")),
    ],
)
def test_compute_prepaid_amount(price, fraction, expected):
    assert compute_prepaid_amount(price, fraction) == expected
