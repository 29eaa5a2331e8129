"""SQLAlchemy ORM models for the Fixera booking platform.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps, always written as UTC

Timestamps use Python-side defaults so that flushed rows never need a refresh
round-trip inside an async session.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from fixera_platform.infra.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users / resources
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user. Professionals own a company calendar; employees point at it.

    A professional *is* the company resource. Employees reference their
    company's professional through ``company_id``.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="customer")  # UserRole
    company_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    is_active = Column(Boolean, default=True)

    # Availability profile
    timezone = Column(String(64), nullable=False, default="UTC")
    availability = Column(JSON, nullable=True)  # {weekday: {available, start_time, end_time}}
    availability_preference = Column(String(20), nullable=False, default="personal")
    blocked_dates = Column(JSON, default=list)  # [{day, reason, is_holiday}]
    blocked_ranges = Column(JSON, default=list)  # [{start, end, reason}]

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class Project(Base):
    """A professional's service listing with one or more purchasable subprojects."""

    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=_uuid)
    professional_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    category = Column(String(100), nullable=True)
    service = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    time_mode = Column(String(10), nullable=False, default="days")  # TimeMode

    # Scheduling pool
    resource_ids = Column(JSON, default=list)  # empty -> [professional_id]
    min_resources = Column(Integer, nullable=False, default=1)
    min_overlap_percentage = Column(Float, nullable=False, default=90.0)
    preparation_duration = Column(JSON, nullable=True)  # {value, unit}

    subprojects = Column(JSON, default=list)
    post_booking_questions = Column(JSON, default=list)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class Booking(Base):
    """Central booking object from RFQ through completion.

    ``version`` is the ORM version counter: concurrent writers of the same row
    cannot both commit.
    """

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_type = Column(String(20), nullable=False, default="project")  # BookingType
    status = Column(String(30), nullable=False, default="rfq", index=True)  # BookingStatus
    version = Column(Integer, nullable=False, default=1)

    customer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    professional_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=True, index=True)
    subproject_index = Column(Integer, nullable=True)

    # RFQ
    rfq_data = Column(JSON, nullable=False, default=dict)
    requested_start = Column(DateTime(timezone=True), nullable=True)

    # Quote
    quote_amount = Column(Numeric(12, 2), nullable=True)
    quote_currency = Column(String(3), nullable=True)
    quote_description = Column(Text, nullable=True)
    quote_breakdown = Column(JSON, nullable=True)
    quote_submitted_at = Column(DateTime(timezone=True), nullable=True)
    quote_submitted_by = Column(String(36), nullable=True)

    # Schedule (set only once booked). The resource block spans
    # [scheduled_intake_start, scheduled_execution_end].
    scheduled_intake_start = Column(DateTime(timezone=True), nullable=True)
    scheduled_start_date = Column(DateTime(timezone=True), nullable=True)
    scheduled_end_date = Column(DateTime(timezone=True), nullable=True)
    scheduled_execution_end = Column(DateTime(timezone=True), nullable=True)
    assigned_resource_ids = Column(JSON, default=list)

    # Post-booking answers (write-once)
    post_booking_data = Column(JSON, nullable=True)

    # Cancellation / dispute
    cancelled_by = Column(String(20), nullable=True)  # BookingActor
    cancel_reason = Column(String(500), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    dispute_raised_by = Column(String(20), nullable=True)  # BookingActor
    dispute_reason = Column(String(500), nullable=True)
    dispute_raised_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    events = relationship("BookingEvent", back_populates="booking")


class BookingEvent(Base):
    """Immutable audit trail entry for booking state transitions."""

    __tablename__ = "booking_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    event_type = Column(String(60), nullable=False)  # BookingEventType
    actor = Column(String(20), nullable=False)  # BookingActor
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    booking = relationship("Booking", back_populates="events")


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class Payment(Base):
    """Escrow payment linked 1:1 to a booking. Its status is not the booking status."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, unique=True)
    status = Column(String(30), nullable=False, default="pending")  # PaymentStatus

    # Amounts
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    vat_rate = Column(Float, nullable=False, default=0.0)
    vat_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_with_vat = Column(Numeric(12, 2), nullable=False)
    platform_commission = Column(Numeric(12, 2), nullable=False, default=0)
    net_amount = Column(Numeric(12, 2), nullable=False)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    refunds = Column(JSON, default=list)  # [{amount, reason, refunded_at}]

    # Gateway
    gateway_payment_id = Column(String(255), nullable=True, index=True)
    client_secret = Column(String(255), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    # Timestamps
    authorized_at = Column(DateTime(timezone=True), nullable=True)
    authorization_expires_at = Column(DateTime(timezone=True), nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
