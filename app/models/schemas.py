"""
Pydantic Schemas

Data validation and serialization schemas for the reservation API
and the availability inputs.
"""

from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AppointmentStatus(str, Enum):
    """Lifecycle states of an appointment."""

    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment states reported by the gateway."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    IN_PROCESS = "in_process"


class PollOutcome(str, Enum):
    """What a single poll cycle tells the customer."""

    STILL_PENDING = "still_pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    REJECTED = "rejected"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    LOCAL = "local"


class NotificationType(str, Enum):
    """Entries of the tenant's admin notification feed."""

    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_EXPIRED = "payment_expired"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    REFUND_PROCESSED = "refund_processed"


# ---------------------------------------------------------------------------
# Availability inputs
# ---------------------------------------------------------------------------


class TimePeriod(BaseModel):
    """An open interval of the working day, e.g. 09:00-12:00."""

    start: time
    end: time

    @model_validator(mode="after")
    def check_order(self) -> "TimePeriod":
        if self.end <= self.start:
            raise ValueError("period end must be after start")
        return self


class BusinessHoursDay(BaseModel):
    """Tenant opening hours for one weekday (0 = Sunday)."""

    model_config = ConfigDict(from_attributes=True)

    day_of_week: int = Field(ge=0, le=6)
    is_open: bool = True
    periods: List[TimePeriod] = Field(default_factory=list)


class ProfessionalSchedule(BaseModel):
    """
    Working hours of a single professional.

    When ``use_business_hours`` is set the professional simply follows
    the tenant's opening hours and the remaining fields are ignored.
    """

    use_business_hours: bool = True
    work_days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    morning_start: Optional[time] = time(9, 0)
    morning_end: Optional[time] = time(12, 0)
    afternoon_start: Optional[time] = time(14, 0)
    afternoon_end: Optional[time] = time(18, 0)

    @field_validator("work_days")
    @classmethod
    def validate_work_days(cls, v: List[int]) -> List[int]:
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("work_days entries must be between 0 (Sunday) and 6")
        return sorted(set(v))


class DateBlock(BaseModel):
    """A closure of a whole day or part of it, tenant-wide or per professional."""

    model_config = ConfigDict(from_attributes=True)

    date: date
    all_day: bool = True
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    professional_id: Optional[str] = None
    description: str = ""


class BookedAppointment(BaseModel):
    """The slice of an appointment the slot calculator needs."""

    model_config = ConfigDict(from_attributes=True)

    appointment_datetime: datetime
    duration_minutes: int = Field(gt=0)
    status: AppointmentStatus
    hold_expires_at: Optional[datetime] = None


class AvailabilityResponse(BaseModel):
    date: date
    professional_id: str
    service_id: str
    slots: List[str]


# ---------------------------------------------------------------------------
# Reservation flow
# ---------------------------------------------------------------------------


class SlotInfo(BaseModel):
    """The slot a customer picked in the booking wizard."""

    tenant_id: str
    professional_id: str
    service_id: str
    appointment_datetime: datetime


class CustomerInfo(BaseModel):
    name: str = Field(min_length=2, max_length=200)
    phone: str = Field(min_length=8, max_length=32)
    email: Optional[str] = None

    @field_validator("name", "phone")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()


class ReservationRequest(BaseModel):
    slot: SlotInfo
    customer: CustomerInfo


class DirectBookingRequest(BaseModel):
    slot: SlotInfo
    customer: CustomerInfo
    confirmed: bool = Field(
        default=False,
        description="Book as confirmed right away instead of pending",
    )


class HoldResult(BaseModel):
    """Returned to the booking wizard once a hold exists."""

    hold_id: str
    payment_reference: str
    qr_payload: Optional[str] = None
    expires_at: datetime
    prepaid_amount: Decimal
    reused: bool = False


class PollResult(BaseModel):
    hold_id: str
    outcome: PollOutcome
    status: AppointmentStatus
    expires_at: Optional[datetime] = None


class SweepResult(BaseModel):
    cancelled_count: int = 0
    notifications_sent: int = 0
    failed: List[str] = Field(default_factory=list)


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundResult(BaseModel):
    appointment_id: str
    refund_amount: Decimal
    status: AppointmentStatus
    refunded: bool


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    professional_id: str
    service_id: str
    appointment_datetime: datetime
    duration_minutes: int
    customer_name: str
    customer_phone: str
    status: AppointmentStatus
    payment_method: PaymentMethod
    total_price: Decimal
    prepaid_amount: Decimal
    hold_expires_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    refunded: bool = False
    refund_amount: Optional[Decimal] = None
