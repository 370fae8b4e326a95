"""
Database Table Definitions

SQLAlchemy Core tables for the booking datastore.

Datetimes are stored naive: ``appointment_datetime`` and the date block
fields are shop wall-clock values, every other timestamp is UTC.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Time,
    func,
)

metadata = MetaData()

# Statuses that make an appointment claim its slot
OCCUPYING_STATUSES = ("pending", "pending_payment", "confirmed")


tenants = Table(
    "tenants",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("slug", String(100), unique=True),
)

professionals = Table(
    "professionals",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), ForeignKey("tenants.id"), nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("phone", String(32)),
    Column("active", Boolean, nullable=False, default=True),
    Column("schedule", JSON),
    # Bumped by every booking; the row write serializes bookings per professional
    Column("booking_version", Integer, nullable=False, default=0),
)

services = Table(
    "services",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), ForeignKey("tenants.id"), nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("duration_minutes", Integer, nullable=False),
    Column("active", Boolean, nullable=False, default=True),
)

business_hours = Table(
    "business_hours",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), ForeignKey("tenants.id"), nullable=False, index=True),
    Column("day_of_week", Integer, nullable=False),  # 0 = Sunday
    Column("is_open", Boolean, nullable=False, default=True),
    Column("periods", JSON),
)

date_blocks = Table(
    "date_blocks",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), ForeignKey("tenants.id"), nullable=False, index=True),
    Column("professional_id", String(36), ForeignKey("professionals.id")),
    Column("date", Date, nullable=False),
    Column("all_day", Boolean, nullable=False, default=True),
    Column("start_time", Time),
    Column("end_time", Time),
    Column("description", String(500), nullable=False, default=""),
)

appointments = Table(
    "appointments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), ForeignKey("tenants.id"), nullable=False),
    Column("professional_id", String(36), ForeignKey("professionals.id"), nullable=False),
    Column("service_id", String(36), ForeignKey("services.id"), nullable=False),
    Column("appointment_datetime", DateTime, nullable=False),
    Column("duration_minutes", Integer, nullable=False),
    Column("customer_name", String(200), nullable=False),
    Column("customer_phone", String(32), nullable=False),
    Column("status", String(20), nullable=False),
    Column("payment_method", String(10), nullable=False, default="local"),
    Column("total_price", Numeric(10, 2), nullable=False, default=0),
    Column("prepaid_amount", Numeric(10, 2), nullable=False, default=0),
    Column("hold_expires_at", DateTime),
    Column("payment_reference", String(64)),
    Column("payment_qr_code", Text),
    Column("refunded", Boolean, nullable=False, default=False),
    Column("refunded_at", DateTime),
    Column("refund_amount", Numeric(10, 2)),
    Column("refund_reason", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime),
)

Index(
    "ix_appointments_professional_day",
    appointments.c.tenant_id,
    appointments.c.professional_id,
    appointments.c.appointment_datetime,
)
Index(
    "ix_appointments_hold_expiry",
    appointments.c.status,
    appointments.c.hold_expires_at,
)
# One occupying appointment per professional start time; overlapping
# ranges are checked under the professional row lock before inserting
Index(
    "uq_appointments_occupied_slot",
    appointments.c.tenant_id,
    appointments.c.professional_id,
    appointments.c.appointment_datetime,
    unique=True,
    postgresql_where=appointments.c.status.in_(OCCUPYING_STATUSES),
    sqlite_where=appointments.c.status.in_(OCCUPYING_STATUSES),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), ForeignKey("tenants.id"), nullable=False, index=True),
    Column("appointment_id", String(36), ForeignKey("appointments.id")),
    Column("type", String(40), nullable=False),
    Column("title", String(200), nullable=False),
    Column("message", Text, nullable=False),
    Column("read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
)
