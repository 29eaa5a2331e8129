"""RFQ → quote → accept/reject, layered on the booking state machine."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Optional

from fixera_platform.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    NotificationEvent,
)
from fixera_platform.domain.errors import ForbiddenError, ValidationError
from fixera_platform.domain.models import Booking, Payment
from fixera_platform.domain.schemas import QuoteSubmit

if TYPE_CHECKING:
    from fixera_platform.services.booking_service import BookingService, Caller

logger = logging.getLogger(__name__)

S = BookingStatus
A = BookingActor


def _quote_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError("amount", "not a number") from e
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount", "must be greater than zero")
    return amount.quantize(Decimal("0.01"))


class QuoteNegotiation:
    """Quote sub-protocol. Money side effects go through the booking service's escrow."""

    def __init__(self, service: BookingService):
        self.service = service

    async def submit_quote(self, booking_id: str, caller: Caller, data: QuoteSubmit) -> Booking:
        """Professional prices an RFQ. A second quote on a quoted booking is rejected."""
        svc = self.service
        booking, actor = await svc.get_booking_for(booking_id, caller)
        if actor == A.PROFESSIONAL and caller.user_id != booking.professional_id:
            raise ForbiddenError("Only the assigned professional can quote")
        svc.state_machine.validate_transition(S(booking.status), S.QUOTED, actor)

        amount = _quote_amount(data.amount)
        currency = (data.currency or "").strip().upper()
        if currency not in svc.settings.supported_currencies_list:
            raise ValidationError(
                "currency",
                f"must be one of {', '.join(svc.settings.supported_currencies_list)}",
            )

        booking.quote_amount = amount
        booking.quote_currency = currency
        booking.quote_description = data.description
        booking.quote_breakdown = (
            [item.model_dump(mode="json") for item in data.breakdown] if data.breakdown else None
        )
        booking.quote_submitted_at = datetime.now(timezone.utc)
        booking.quote_submitted_by = caller.user_id

        await svc.transition(
            booking,
            S.QUOTED,
            actor,
            caller.user_id,
            BookingEventType.QUOTE_SUBMITTED,
            {"amount": str(amount), "currency": currency},
        )
        await svc.notify(
            NotificationEvent.QUOTE_SUBMITTED,
            [booking.customer_id],
            {"booking_id": booking.id, "amount": str(amount), "currency": currency},
        )
        return booking

    async def respond_to_quote(
        self,
        booking_id: str,
        caller: Caller,
        action: str,
        reason: Optional[str] = None,
    ) -> tuple[Booking, Optional[Payment]]:
        """Customer accepts (starts payment authorization) or rejects the quote."""
        svc = self.service
        booking, actor = await svc.get_booking_for(booking_id, caller)

        if action == "reject":
            await svc.transition(
                booking,
                S.QUOTE_REJECTED,
                actor,
                caller.user_id,
                BookingEventType.QUOTE_REJECTED,
                {"reason": reason},
            )
            await svc.notify(
                NotificationEvent.QUOTE_REJECTED,
                [booking.professional_id],
                {"booking_id": booking.id, "reason": reason},
            )
            return booking, None

        if action != "accept":
            raise ValidationError("action", "must be 'accept' or 'reject'")

        await svc.transition(
            booking,
            S.QUOTE_ACCEPTED,
            actor,
            caller.user_id,
            BookingEventType.QUOTE_ACCEPTED,
        )
        payment = await svc.run_side_effect(booking, svc.escrow.initiate_authorization(booking))
        await svc.transition(
            booking,
            S.PAYMENT_PENDING,
            A.SYSTEM,
            "system",
            BookingEventType.PAYMENT_AUTHORIZATION_STARTED,
            {"payment_id": payment.id, "total_with_vat": str(payment.total_with_vat)},
        )
        await svc.notify(
            NotificationEvent.QUOTE_ACCEPTED,
            [booking.professional_id],
            {"booking_id": booking.id},
        )
        return booking, payment

    async def reopen(self, booking_id: str, caller: Caller, reason: Optional[str] = None) -> Booking:
        """Professional reopens a rejected quote; the old quote is dropped."""
        svc = self.service
        booking, actor = await svc.get_booking_for(booking_id, caller)
        await svc.transition(
            booking,
            S.RFQ,
            actor,
            caller.user_id,
            BookingEventType.RFQ_REOPENED,
            {"reason": reason},
        )
        return booking
