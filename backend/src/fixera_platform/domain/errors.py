"""Booking domain error taxonomy.

Services raise these; HTTP routes translate them into status codes.
`NoAvailability` is a value, not an exception: exhausting the scan horizon is a
normal business outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from fixera_platform.domain.enums import BookingStatus


class BookingError(Exception):
    """Base class for all booking-domain failures."""


class InvalidTransitionError(BookingError):
    """Raised when a booking state transition is not allowed. Status is unchanged."""

    def __init__(
        self,
        current_status: BookingStatus,
        target_status: BookingStatus,
        reason: str,
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


class ForbiddenError(BookingError):
    """Raised when the caller's role may not perform the requested action."""


class ValidationError(BookingError):
    """Raised for malformed input; names the offending field."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class ConfigurationError(BookingError):
    """Raised before any scan when scheduling parameters cannot be satisfied."""


class PaymentFailureError(BookingError):
    """Raised when the payment gateway declines or times out."""

    def __init__(self, operation: str, reason: str, retryable: bool = False):
        self.operation = operation
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"Payment {operation} failed: {reason}")


class ConflictError(BookingError):
    """Raised when a commit-time re-check or a concurrent write invalidates the request.

    When raised for a scheduling conflict, ``proposal`` carries a freshly
    computed proposal the caller can offer instead.
    """

    def __init__(self, message: str, proposal: Optional[Any] = None):
        self.message = message
        self.proposal = proposal
        super().__init__(message)


class ScheduleConflictError(ConflictError):
    """The requested start is no longer feasible; ``proposal`` holds a fresh alternative."""


class NotFoundError(BookingError):
    """Raised when a referenced booking, project or payment does not exist."""


@dataclass(frozen=True)
class NoAvailability:
    """Proposal engine exhausted its horizon without a feasible window."""

    reason: str
    horizon_days: int
