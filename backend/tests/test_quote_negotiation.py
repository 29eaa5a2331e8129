"""Tests for the quote sub-protocol: submit, accept/reject, reopen."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from fixera_platform.domain.enums import BookingStatus, PaymentStatus
from fixera_platform.domain.errors import (
    ForbiddenError,
    InvalidTransitionError,
    PaymentFailureError,
    ValidationError,
)
from fixera_platform.domain.models import BookingEvent
from fixera_platform.domain.schemas import QuoteSubmit
from fixera_platform.services.booking_service import Caller

S = BookingStatus


@pytest.fixture
async def parties(make_user):
    customer = await make_user("customer", name="Cara Customer")
    professional = await make_user("professional", name="Pat Plumber")
    return customer, professional


def quote(amount="1500", currency="EUR", **kwargs) -> QuoteSubmit:
    return QuoteSubmit(amount=Decimal(amount), currency=currency, description="Full renovation", **kwargs)


class TestSubmitQuote:
    async def test_quote_moves_rfq_to_quoted(self, booking_service, parties, make_booking, notifier):
        customer, professional = parties
        booking = await make_booking(customer, professional)

        result = await booking_service.quotes.submit_quote(
            booking.id, Caller.from_user(professional), quote()
        )

        assert result.status == S.QUOTED.value
        assert result.quote_amount == Decimal("1500.00")
        assert result.quote_currency == "EUR"
        assert result.quote_submitted_by == professional.id
        assert notifier.events() == ["quote_submitted"]

    async def test_second_quote_is_an_invalid_transition(self, booking_service, parties, make_booking):
        customer, professional = parties
        booking = await make_booking(customer, professional)
        caller = Caller.from_user(professional)
        await booking_service.quotes.submit_quote(booking.id, caller, quote())

        with pytest.raises(InvalidTransitionError):
            await booking_service.quotes.submit_quote(booking.id, caller, quote("1800"))
        assert booking.quote_amount == Decimal("1500.00")

    async def test_customer_cannot_quote(self, booking_service, parties, make_booking):
        customer, professional = parties
        booking = await make_booking(customer, professional)
        with pytest.raises(ForbiddenError):
            await booking_service.quotes.submit_quote(booking.id, Caller.from_user(customer), quote())

    async def test_other_professional_cannot_quote(self, booking_service, parties, make_booking, make_user):
        customer, professional = parties
        booking = await make_booking(customer, professional)
        stranger = await make_user("professional")
        with pytest.raises(ForbiddenError):
            await booking_service.quotes.submit_quote(booking.id, Caller.from_user(stranger), quote())

    @pytest.mark.parametrize("amount", ["0", "-10"])
    async def test_amount_must_be_positive(self, booking_service, parties, make_booking, amount):
        customer, professional = parties
        booking = await make_booking(customer, professional)
        with pytest.raises(ValidationError) as exc:
            await booking_service.quotes.submit_quote(
                booking.id, Caller.from_user(professional), quote(amount)
            )
        assert exc.value.field == "amount"
        assert booking.status == S.RFQ.value

    async def test_unsupported_currency(self, booking_service, parties, make_booking):
        customer, professional = parties
        booking = await make_booking(customer, professional)
        with pytest.raises(ValidationError) as exc:
            await booking_service.quotes.submit_quote(
                booking.id, Caller.from_user(professional), quote(currency="JPY")
            )
        assert exc.value.field == "currency"

    async def test_currency_is_normalized(self, booking_service, parties, make_booking):
        customer, professional = parties
        booking = await make_booking(customer, professional)
        result = await booking_service.quotes.submit_quote(
            booking.id, Caller.from_user(professional), quote(currency=" usd ")
        )
        assert result.quote_currency == "USD"


class TestRespondToQuote:
    async def test_accept_starts_payment_authorization(self, booking_service, parties, make_booking, fake_gateway):
        customer, professional = parties
        booking = await make_booking(customer, professional, status="quoted", quote_amount=Decimal("1500"))

        result, payment = await booking_service.quotes.respond_to_quote(
            booking.id, Caller.from_user(customer), "accept"
        )

        assert result.status == S.PAYMENT_PENDING.value
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.total_with_vat == Decimal("1500.00")
        assert fake_gateway.authorizations[0]["amount"] == Decimal("1500.00")

        events = await booking_service.get_timeline(booking.id, Caller.from_user(customer))
        assert [(e.from_status, e.to_status) for e in events] == [
            ("quoted", "quote_accepted"),
            ("quote_accepted", "payment_pending"),
        ]

    async def test_authorization_failure_keeps_quote_open(
        self, db_session, booking_service, parties, make_booking, fake_gateway
    ):
        customer, professional = parties
        booking = await make_booking(customer, professional, status="quoted", quote_amount=Decimal("1500"))
        await db_session.commit()
        fake_gateway.fail_next("authorize")

        with pytest.raises(PaymentFailureError):
            await booking_service.quotes.respond_to_quote(booking.id, Caller.from_user(customer), "accept")

        await db_session.refresh(booking)
        assert booking.status == S.QUOTED.value
        events = (await db_session.execute(select(BookingEvent))).scalars().all()
        assert events == []

    async def test_professional_cannot_accept(self, booking_service, parties, make_booking):
        customer, professional = parties
        booking = await make_booking(customer, professional, status="quoted", quote_amount=Decimal("1500"))
        with pytest.raises(ForbiddenError):
            await booking_service.quotes.respond_to_quote(booking.id, Caller.from_user(professional), "accept")

    async def test_reject_keeps_quote_for_reference(self, booking_service, parties, make_booking, notifier):
        customer, professional = parties
        booking = await make_booking(customer, professional, status="quoted", quote_amount=Decimal("1500"))

        result, payment = await booking_service.quotes.respond_to_quote(
            booking.id, Caller.from_user(customer), "reject", "too expensive"
        )

        assert payment is None
        assert result.status == S.QUOTE_REJECTED.value
        assert result.quote_amount == Decimal("1500")
        assert notifier.sent[0][1] == professional.id

    async def test_unknown_action(self, booking_service, parties, make_booking):
        customer, professional = parties
        booking = await make_booking(customer, professional, status="quoted", quote_amount=Decimal("1500"))
        with pytest.raises(ValidationError):
            await booking_service.quotes.respond_to_quote(booking.id, Caller.from_user(customer), "maybe")


class TestReopen:
    async def test_reopen_drops_the_old_quote(self, booking_service, parties, make_booking):
        customer, professional = parties
        booking = await make_booking(
            customer, professional, status="quote_rejected", quote_amount=Decimal("1500")
        )

        result = await booking_service.quotes.reopen(booking.id, Caller.from_user(professional), "new price")

        assert result.status == S.RFQ.value
        assert result.quote_amount is None
        assert result.quote_currency is None
        events = await booking_service.get_timeline(booking.id, Caller.from_user(professional))
        assert Decimal(events[-1].data["cleared"]["quote"]["amount"]) == Decimal("1500")

        # A fresh quote can now be submitted.
        requoted = await booking_service.quotes.submit_quote(
            booking.id, Caller.from_user(professional), quote("1200")
        )
        assert requoted.status == S.QUOTED.value

    async def test_quoted_booking_cannot_be_reopened(self, booking_service, parties, make_booking):
        customer, professional = parties
        booking = await make_booking(customer, professional, status="quoted", quote_amount=Decimal("1500"))
        with pytest.raises(InvalidTransitionError):
            await booking_service.quotes.reopen(booking.id, Caller.from_user(professional))
