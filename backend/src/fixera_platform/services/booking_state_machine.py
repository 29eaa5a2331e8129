"""Booking state machine: validates transitions and enforces role rules.

Every status change of a booking goes through ``validate_transition``. An edge
that does not exist raises ``InvalidTransitionError``; an edge that exists but
not for the calling role raises ``ForbiddenError``. Status is never changed
here; the booking service writes it after validation.
"""

from typing import Optional

from fixera_platform.domain.enums import BookingActor, BookingStatus, PaymentStatus
from fixera_platform.domain.errors import ForbiddenError, InvalidTransitionError


# ---------------------------------------------------------------------------
# Transition map: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

S = BookingStatus
A = BookingActor

TRANSITION_MAP: dict[BookingStatus, dict[BookingStatus, set[BookingActor]]] = {
    S.RFQ: {
        S.QUOTED: {A.PROFESSIONAL},
    },
    S.QUOTED: {
        S.QUOTE_ACCEPTED: {A.CUSTOMER},
        S.QUOTE_REJECTED: {A.CUSTOMER},
    },
    S.QUOTE_REJECTED: {
        S.RFQ: {A.PROFESSIONAL},  # reopen for a new quote
    },
    S.QUOTE_ACCEPTED: {
        S.PAYMENT_PENDING: {A.SYSTEM},
    },
    S.PAYMENT_PENDING: {
        S.BOOKED: {A.SYSTEM},  # gateway callback
    },
    S.BOOKED: {
        S.IN_PROGRESS: {A.PROFESSIONAL},
        S.DISPUTE: {A.CUSTOMER, A.PROFESSIONAL},
    },
    S.IN_PROGRESS: {
        S.COMPLETED: {A.CUSTOMER},
    },
    S.COMPLETED: {
        S.DISPUTE: {A.CUSTOMER, A.PROFESSIONAL},
    },
    S.DISPUTE: {
        S.REFUNDED: {A.ADMIN},
    },
}

# Cancellation is role-dependent rather than a single edge
CANCELLATION_STATES: dict[BookingActor, set[BookingStatus]] = {
    A.CUSTOMER: {S.RFQ, S.QUOTED, S.QUOTE_ACCEPTED, S.PAYMENT_PENDING},
    A.PROFESSIONAL: {S.RFQ, S.QUOTED, S.PAYMENT_PENDING},
    A.ADMIN: {S.RFQ, S.QUOTED, S.QUOTE_ACCEPTED, S.PAYMENT_PENDING},
    A.SYSTEM: {S.PAYMENT_PENDING},  # authorization expiry
}

CANCELLABLE_STATES: set[BookingStatus] = set().union(*CANCELLATION_STATES.values())

TERMINAL_STATES: set[BookingStatus] = {
    S.COMPLETED,
    S.CANCELLED,
    S.REFUNDED,
}

# Edges that require the escrow payment in a given status
REQUIRED_PAYMENT_STATUS: dict[tuple[BookingStatus, BookingStatus], PaymentStatus] = {
    (S.PAYMENT_PENDING, S.BOOKED): PaymentStatus.AUTHORIZED,
    (S.BOOKED, S.IN_PROGRESS): PaymentStatus.AUTHORIZED,
    (S.IN_PROGRESS, S.COMPLETED): PaymentStatus.AUTHORIZED,
}

# A quote may exist only in these states
QUOTE_STATES: set[BookingStatus] = {
    S.QUOTED,
    S.QUOTE_ACCEPTED,
    S.QUOTE_REJECTED,
    S.PAYMENT_PENDING,
    S.BOOKED,
    S.IN_PROGRESS,
    S.COMPLETED,
}

# A schedule may exist only in these states
SCHEDULED_STATES: set[BookingStatus] = {
    S.BOOKED,
    S.IN_PROGRESS,
    S.COMPLETED,
}

# Bookings in these states occupy their assigned resources
BLOCKING_STATES: set[BookingStatus] = {
    S.BOOKED,
    S.IN_PROGRESS,
}


class BookingStateMachine:
    """Validates booking state transitions and enforces role rules."""

    def validate_transition(
        self,
        current_status: BookingStatus,
        target_status: BookingStatus,
        actor: BookingActor,
        payment_status: Optional[PaymentStatus] = None,
    ) -> bool:
        """Return True if the transition is valid.

        Raises:
            InvalidTransitionError: the edge does not exist, or its payment
                precondition is not met.
            ForbiddenError: the edge exists but ``actor`` may not take it.
        """
        if target_status == S.CANCELLED:
            return self._validate_cancellation(current_status, actor)

        allowed_targets = TRANSITION_MAP.get(current_status)
        if allowed_targets is None:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"No transitions allowed from {current_status.value}",
            )

        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise ForbiddenError(
                f"Actor {actor.value} is not permitted to move a booking from "
                f"{current_status.value} to {target_status.value} "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})"
            )

        required = REQUIRED_PAYMENT_STATUS.get((current_status, target_status))
        if required is not None and payment_status != required:
            found = payment_status.value if payment_status is not None else "none"
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Payment must be {required.value} (is {found})",
            )

        return True

    def _validate_cancellation(self, current_status: BookingStatus, actor: BookingActor) -> bool:
        if current_status not in CANCELLABLE_STATES:
            raise InvalidTransitionError(
                current_status,
                S.CANCELLED,
                f"Bookings in {current_status.value} cannot be cancelled",
            )
        if current_status not in CANCELLATION_STATES.get(actor, set()):
            raise ForbiddenError(
                f"Actor {actor.value} may not cancel a booking in {current_status.value}"
            )
        return True

    def get_allowed_transitions(
        self,
        current_status: BookingStatus,
        actor: BookingActor,
    ) -> list[BookingStatus]:
        """Return list of valid next states for the given actor from the current status."""
        results: list[BookingStatus] = [
            target
            for target, allowed_actors in TRANSITION_MAP.get(current_status, {}).items()
            if actor in allowed_actors
        ]
        if current_status in CANCELLATION_STATES.get(actor, set()):
            results.append(S.CANCELLED)
        return results
