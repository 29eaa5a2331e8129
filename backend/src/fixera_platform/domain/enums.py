"""Domain enumerations for the Fixera booking platform.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


# ---------------------------------------------------------------------------
# Users / resources
# ---------------------------------------------------------------------------


class UserRole(str, Enum):
    """Platform role stored on the user row."""

    CUSTOMER = "customer"
    PROFESSIONAL = "professional"
    EMPLOYEE = "employee"
    ADMIN = "admin"


class ResourceKind(str, Enum):
    """A schedulable resource is either a company (professional) or one of its employees."""

    COMPANY = "company"
    EMPLOYEE = "employee"


class AvailabilityPreference(str, Enum):
    """Whether an employee follows their own weekly pattern or the company's."""

    PERSONAL = "personal"
    SAME_AS_COMPANY = "same_as_company"


class Weekday(str, Enum):
    """Weekday keys of a weekly availability pattern, Monday first."""

    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"


# ---------------------------------------------------------------------------
# Projects / subprojects
# ---------------------------------------------------------------------------


class TimeMode(str, Enum):
    """Scheduling granularity of a project."""

    HOURS = "hours"
    DAYS = "days"


class DurationUnit(str, Enum):
    HOURS = "hours"
    DAYS = "days"


class PricingType(str, Enum):
    """How a subproject is priced."""

    FIXED = "fixed"
    UNIT = "unit"
    RFQ = "rfq"


class ProfessionalInputType(str, Enum):
    """Field type of a professional-provided subproject input."""

    TEXT = "text"
    NUMBER = "number"
    DROPDOWN = "dropdown"
    RANGE = "range"


class QuestionType(str, Enum):
    """Type of a post-booking question."""

    TEXT = "text"
    MULTIPLE_CHOICE = "multiple_choice"
    ATTACHMENT = "attachment"


RENOVATION_CATEGORY = "renovation"


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingType(str, Enum):
    """Whether a booking targets a professional directly or a project listing."""

    PROFESSIONAL = "professional"
    PROJECT = "project"


class BookingStatus(str, Enum):
    """Booking lifecycle states."""

    RFQ = "rfq"
    QUOTED = "quoted"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    PAYMENT_PENDING = "payment_pending"
    BOOKED = "booked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTE = "dispute"
    REFUNDED = "refunded"


class BookingActor(str, Enum):
    """Who triggered a booking state transition."""

    CUSTOMER = "customer"
    PROFESSIONAL = "professional"
    ADMIN = "admin"
    SYSTEM = "system"


class BookingEventType(str, Enum):
    """Types of booking audit trail events."""

    RFQ_SUBMITTED = "rfq_submitted"
    QUOTE_SUBMITTED = "quote_submitted"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    RFQ_REOPENED = "rfq_reopened"
    PAYMENT_AUTHORIZATION_STARTED = "payment_authorization_started"
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_EXPIRED = "payment_expired"
    BOOKED = "booked"
    SCHEDULE_CONFLICT = "schedule_conflict"
    WORK_STARTED = "work_started"
    COMPLETED = "completed"
    PAYMENT_RELEASED = "payment_released"
    CANCELLED = "cancelled"
    DISPUTE_RAISED = "dispute_raised"
    REFUNDED = "refunded"
    POST_BOOKING_ANSWERS_SUBMITTED = "post_booking_answers_submitted"


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentStatus(str, Enum):
    """Escrow payment status, distinct from booking status."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    EXPIRED = "expired"


class GatewayCallbackStatus(str, Enum):
    """Outcome reported by the payment gateway callback."""

    AUTHORIZED = "authorized"
    FAILED = "failed"


class NotificationEvent(str, Enum):
    """Events sent through the notifier collaborator."""

    QUOTE_SUBMITTED = "quote_submitted"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    WORK_STARTED = "work_started"
    BOOKING_COMPLETED = "booking_completed"
    DISPUTE_RAISED = "dispute_raised"
    REFUND_ISSUED = "refund_issued"
    SCHEDULE_CONFLICT = "schedule_conflict"
