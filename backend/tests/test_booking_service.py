"""Tests for BookingService: creation, commit on payment, lifecycle and answers."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fixera_platform.domain.enums import (
    BookingActor,
    BookingStatus,
    BookingType,
    GatewayCallbackStatus,
    PaymentStatus,
)
from fixera_platform.domain.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PaymentFailureError,
    ValidationError,
)
from fixera_platform.domain.models import Booking, BookingEvent, Payment, User
from fixera_platform.domain.schemas import BookingCreate, PaymentWebhook, PostBookingAnswer, QuoteSubmit
from fixera_platform.infra.database import Base
from fixera_platform.services.booking_service import BookingService, Caller, resolve_actor
from fixera_platform.services.escrow_coordinator import compute_amounts
from fixera_platform.services.scheduling_engine import ScheduleProposal

S = BookingStatus
A = BookingActor

# A fixed midnight a week ahead keeps every requested start in the future.
NOW = (datetime.now(timezone.utc) + timedelta(days=7)).replace(hour=0, minute=0, second=0, microsecond=0)
HOURS_2 = {"value": 2, "unit": "hours"}


async def add_payment(db, booking, status="authorized", amount="1000"):
    payment = Payment(
        booking_id=booking.id,
        status=status,
        currency="EUR",
        gateway_payment_id=f"pi_{uuid.uuid4().hex[:12]}",
        refunds=[],
        authorization_expires_at=NOW + timedelta(days=7),
        **compute_amounts(Decimal(amount), 0.0, 10.0),
    )
    db.add(payment)
    await db.flush()
    return payment


async def event_types(db, booking_id) -> list[str]:
    result = await db.execute(
        select(BookingEvent.event_type)
        .where(BookingEvent.booking_id == booking_id)
        .order_by(BookingEvent.created_at)
    )
    return list(result.scalars().all())


@pytest.fixture
async def team(make_user, all_week):
    customer = await make_user("customer")
    professional = await make_user("professional", availability=all_week)
    return customer, professional


@pytest.fixture
async def hours_project(team, make_project):
    _, professional = team
    return await make_project(professional, time_mode="hours", execution=HOURS_2)


# ---------------------------------------------------------------------------
# Actors and creation
# ---------------------------------------------------------------------------


class TestActors:
    async def test_resolve_actor(self, team, make_booking, make_user):
        customer, professional = team
        booking = await make_booking(customer, professional)
        admin = await make_user("admin")
        stranger = await make_user("customer")

        assert resolve_actor(booking, Caller.from_user(customer)) == A.CUSTOMER
        assert resolve_actor(booking, Caller.from_user(professional)) == A.PROFESSIONAL
        assert resolve_actor(booking, Caller.from_user(admin)) == A.ADMIN
        with pytest.raises(ForbiddenError):
            resolve_actor(booking, Caller.from_user(stranger))


class TestCreateBooking:
    async def test_customer_submits_project_rfq(self, db_session, booking_service, team, hours_project):
        customer, professional = team
        data = BookingCreate(
            booking_type=BookingType.PROJECT,
            project_id=hours_project.id,
            subproject_index=0,
            rfq_data={"description": "Retile the bathroom", "preferred_start_date": NOW + timedelta(hours=10)},
        )

        booking = await booking_service.create_booking(Caller.from_user(customer), data)

        assert booking.status == S.RFQ.value
        assert booking.professional_id == professional.id
        assert booking.requested_start == NOW + timedelta(hours=10)
        assert await event_types(db_session, booking.id) == ["rfq_submitted"]

    async def test_direct_professional_rfq(self, booking_service, team):
        customer, professional = team
        data = BookingCreate(
            booking_type=BookingType.PROFESSIONAL,
            professional_id=professional.id,
            rfq_data={"description": "Leaking tap"},
        )
        booking = await booking_service.create_booking(Caller.from_user(customer), data)
        assert booking.booking_type == "professional"
        assert booking.project_id is None

    async def test_professionals_cannot_create_bookings(self, booking_service, team):
        _, professional = team
        data = BookingCreate(
            booking_type=BookingType.PROFESSIONAL,
            professional_id=professional.id,
            rfq_data={"description": "x"},
        )
        with pytest.raises(ForbiddenError):
            await booking_service.create_booking(Caller.from_user(professional), data)

    async def test_unknown_project(self, booking_service, team):
        customer, _ = team
        data = BookingCreate(
            booking_type=BookingType.PROJECT,
            project_id="missing",
            subproject_index=0,
            rfq_data={"description": "x"},
        )
        with pytest.raises(NotFoundError):
            await booking_service.create_booking(Caller.from_user(customer), data)

    async def test_subproject_index_out_of_range(self, booking_service, team, hours_project):
        customer, _ = team
        data = BookingCreate(
            booking_type=BookingType.PROJECT,
            project_id=hours_project.id,
            subproject_index=3,
            rfq_data={"description": "x"},
        )
        with pytest.raises(ValidationError) as exc:
            await booking_service.create_booking(Caller.from_user(customer), data)
        assert exc.value.field == "subproject_index"


# ---------------------------------------------------------------------------
# Payment callback and commit
# ---------------------------------------------------------------------------


async def pending_booking(booking_service, customer, professional, project, make_booking, start):
    booking = await make_booking(
        customer, professional, project, status="quoted", quote_amount=Decimal("1000"), requested_start=start
    )
    _, payment = await booking_service.quotes.respond_to_quote(booking.id, Caller.from_user(customer), "accept")
    return booking, payment


def authorized(payment) -> PaymentWebhook:
    return PaymentWebhook(gateway_payment_id=payment.gateway_payment_id, status=GatewayCallbackStatus.AUTHORIZED)


class TestPaymentCallback:
    async def test_authorization_books_the_requested_slot(
        self, db_session, booking_service, team, hours_project, make_booking, notifier
    ):
        customer, professional = team
        start = NOW + timedelta(hours=10)
        booking, payment = await pending_booking(
            booking_service, customer, professional, hours_project, make_booking, start
        )

        result = await booking_service.handle_payment_callback(authorized(payment), now=NOW)

        assert result.booked
        assert booking.status == S.BOOKED.value
        assert booking.scheduled_start_date == start
        assert booking.scheduled_end_date == start + timedelta(hours=2)
        assert booking.assigned_resource_ids == [professional.id]
        assert payment.status == PaymentStatus.AUTHORIZED.value
        assert "booking_confirmed" in notifier.events()
        assert (await event_types(db_session, booking.id))[-2:] == ["payment_authorized", "booked"]

    async def test_duplicate_callback_is_harmless(self, booking_service, team, hours_project, make_booking):
        customer, professional = team
        booking, payment = await pending_booking(
            booking_service, customer, professional, hours_project, make_booking, NOW + timedelta(hours=10)
        )
        await booking_service.handle_payment_callback(authorized(payment), now=NOW)

        again = await booking_service.handle_payment_callback(authorized(payment), now=NOW)

        assert not again.booked
        assert booking.status == S.BOOKED.value

    async def test_slot_taken_meanwhile_reports_conflict(
        self, db_session, booking_service, team, hours_project, make_booking, make_user, notifier
    ):
        customer, professional = team
        start = NOW + timedelta(hours=10)
        booking, payment = await pending_booking(
            booking_service, customer, professional, hours_project, make_booking, start
        )
        # Another customer's booking took 10:00-12:00 while this payment was pending.
        await make_booking(
            await make_user("customer"),
            professional,
            hours_project,
            status="booked",
            scheduled_intake_start=start,
            scheduled_start_date=start,
            scheduled_end_date=start + timedelta(hours=2),
            scheduled_execution_end=start + timedelta(hours=2),
            assigned_resource_ids=[professional.id],
        )

        result = await booking_service.handle_payment_callback(authorized(payment), now=NOW)

        assert not result.booked
        assert booking.status == S.PAYMENT_PENDING.value
        assert isinstance(result.conflict.proposal, ScheduleProposal)
        assert result.conflict.proposal.earliest_proposal.start == start + timedelta(hours=2)
        assert "schedule_conflict" in await event_types(db_session, booking.id)
        assert "schedule_conflict" in notifier.events()

    async def test_customer_reschedules_after_conflict(self, booking_service, team, hours_project, make_booking):
        customer, professional = team
        booking, payment = await pending_booking(
            booking_service, customer, professional, hours_project, make_booking, None
        )
        await booking_service.escrow.record_gateway_result(
            payment.gateway_payment_id, GatewayCallbackStatus.AUTHORIZED
        )
        new_start = NOW + timedelta(days=1, hours=13)

        result = await booking_service.reschedule(booking.id, Caller.from_user(customer), new_start)

        assert result.status == S.BOOKED.value
        assert result.scheduled_start_date == new_start

    async def test_professional_cannot_reschedule(self, booking_service, team, hours_project, make_booking):
        customer, professional = team
        booking, _ = await pending_booking(
            booking_service, customer, professional, hours_project, make_booking, None
        )
        with pytest.raises(ForbiddenError):
            await booking_service.reschedule(booking.id, Caller.from_user(professional), NOW)

    async def test_failed_authorization(self, db_session, booking_service, team, hours_project, make_booking):
        customer, professional = team
        booking, payment = await pending_booking(
            booking_service, customer, professional, hours_project, make_booking, NOW + timedelta(hours=10)
        )
        webhook = PaymentWebhook(
            gateway_payment_id=payment.gateway_payment_id,
            status=GatewayCallbackStatus.FAILED,
            failure_reason="card declined",
        )

        result = await booking_service.handle_payment_callback(webhook, now=NOW)

        assert not result.booked
        assert booking.status == S.PAYMENT_PENDING.value
        assert payment.status == PaymentStatus.FAILED.value
        assert (await event_types(db_session, booking.id))[-1] == "payment_failed"

    async def test_direct_booking_assigns_the_professional(self, booking_service, team, make_booking):
        customer, professional = team
        booking, payment = await pending_booking(
            booking_service, customer, professional, None, make_booking, NOW + timedelta(hours=3)
        )
        result = await booking_service.handle_payment_callback(authorized(payment), now=NOW)
        assert result.booked
        assert booking.assigned_resource_ids == [professional.id]
        assert booking.scheduled_end_date is None

    async def test_cannot_book_without_authorized_payment(self, booking_service, team, hours_project, make_booking):
        customer, professional = team
        booking, _ = await pending_booking(
            booking_service, customer, professional, hours_project, make_booking, NOW + timedelta(hours=10)
        )
        with pytest.raises(InvalidTransitionError):
            await booking_service.confirm_booking(booking, now=NOW)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestCancel:
    async def test_cancel_pending_payment_releases_hold(
        self, booking_service, team, hours_project, make_booking, fake_gateway, notifier
    ):
        customer, professional = team
        booking, payment = await pending_booking(
            booking_service, customer, professional, hours_project, make_booking, NOW + timedelta(hours=10)
        )
        notifier.sent.clear()

        await booking_service.update_status(booking.id, Caller.from_user(customer), S.CANCELLED, "changed my mind")

        assert booking.status == S.CANCELLED.value
        assert booking.cancelled_by == "customer"
        assert booking.cancel_reason == "changed my mind"
        assert payment.status == PaymentStatus.FAILED.value
        assert fake_gateway.refunds[0]["captured"] is False
        assert [recipient for _, recipient, _ in notifier.sent] == [professional.id]

    async def test_cancel_quoted_clears_quote(self, booking_service, team, make_booking):
        customer, professional = team
        booking = await make_booking(customer, professional, status="quoted", quote_amount=Decimal("500"))
        await booking_service.update_status(booking.id, Caller.from_user(professional), S.CANCELLED)
        assert booking.status == S.CANCELLED.value
        assert booking.quote_amount is None

    async def test_booked_cannot_be_cancelled(self, booking_service, team, make_booking):
        customer, professional = team
        booking = await make_booking(customer, professional, status="booked")
        with pytest.raises(InvalidTransitionError):
            await booking_service.update_status(booking.id, Caller.from_user(customer), S.CANCELLED)

    async def test_failed_release_keeps_booking_pending(
        self, db_session, booking_service, team, make_booking, fake_gateway
    ):
        customer, professional = team
        booking = await make_booking(customer, professional, status="payment_pending", quote_amount=Decimal("100"))
        await add_payment(db_session, booking, status="pending", amount="100")
        await db_session.commit()
        fake_gateway.fail_next("refund")

        with pytest.raises(PaymentFailureError):
            await booking_service.update_status(booking.id, Caller.from_user(customer), S.CANCELLED)

        await db_session.refresh(booking)
        assert booking.status == S.PAYMENT_PENDING.value
        assert booking.cancelled_at is None


class TestWorkAndCompletion:
    async def test_full_lifecycle_captures_once(self, db_session, booking_service, team, make_booking, fake_gateway):
        customer, professional = team
        booking = await make_booking(customer, professional, status="booked", quote_amount=Decimal("1000"))
        payment = await add_payment(db_session, booking)

        await booking_service.update_status(booking.id, Caller.from_user(professional), S.IN_PROGRESS)
        await booking_service.update_status(booking.id, Caller.from_user(customer), S.COMPLETED)

        assert booking.status == S.COMPLETED.value
        assert payment.status == PaymentStatus.COMPLETED.value
        assert fake_gateway.captures == [payment.gateway_payment_id]
        assert (await event_types(db_session, booking.id))[-3:] == ["work_started", "completed", "payment_released"]

        with pytest.raises(InvalidTransitionError):
            await booking_service.update_status(booking.id, Caller.from_user(customer), S.COMPLETED)
        assert len(fake_gateway.captures) == 1

    async def test_professional_cannot_complete(self, db_session, booking_service, team, make_booking):
        customer, professional = team
        booking = await make_booking(customer, professional, status="in_progress", quote_amount=Decimal("1000"))
        await add_payment(db_session, booking)
        with pytest.raises(ForbiddenError):
            await booking_service.update_status(booking.id, Caller.from_user(professional), S.COMPLETED)

    async def test_capture_failure_rolls_back_completion(
        self, db_session, booking_service, team, make_booking, fake_gateway
    ):
        customer, professional = team
        booking = await make_booking(customer, professional, status="in_progress", quote_amount=Decimal("1000"))
        payment = await add_payment(db_session, booking)
        await db_session.commit()
        fake_gateway.fail_next("capture")

        with pytest.raises(PaymentFailureError):
            await booking_service.update_status(booking.id, Caller.from_user(customer), S.COMPLETED)

        await db_session.refresh(booking)
        await db_session.refresh(payment)
        assert booking.status == S.IN_PROGRESS.value
        assert payment.status == PaymentStatus.AUTHORIZED.value
        assert await event_types(db_session, booking.id) == []

    async def test_status_set_by_its_own_operation(self, booking_service, team, make_booking):
        customer, professional = team
        booking = await make_booking(customer, professional)
        with pytest.raises(ValidationError) as exc:
            await booking_service.update_status(booking.id, Caller.from_user(professional), S.QUOTED)
        assert exc.value.field == "status"


class TestDisputes:
    async def test_dispute_needs_reason(self, db_session, booking_service, team, make_booking):
        customer, professional = team
        booking = await make_booking(customer, professional, status="completed", quote_amount=Decimal("1000"))
        with pytest.raises(ValidationError):
            await booking_service.update_status(booking.id, Caller.from_user(customer), S.DISPUTE, "  ")

    async def test_admin_refunds_disputed_booking(
        self, db_session, booking_service, team, make_booking, make_user, fake_gateway
    ):
        customer, professional = team
        admin = await make_user("admin")
        booking = await make_booking(customer, professional, status="completed", quote_amount=Decimal("1000"))
        payment = await add_payment(db_session, booking, status="completed")

        await booking_service.update_status(booking.id, Caller.from_user(customer), S.DISPUTE, "tiles cracked")
        assert booking.dispute_raised_by == "customer"

        with pytest.raises(ForbiddenError):
            await booking_service.update_status(booking.id, Caller.from_user(customer), S.REFUNDED)

        await booking_service.update_status(
            booking.id, Caller.from_user(admin), S.REFUNDED, "partial refund", Decimal("300")
        )
        assert booking.status == S.REFUNDED.value
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert fake_gateway.refunds[0]["amount"] == Decimal("300.00")


class TestConcurrency:
    async def test_stale_write_is_a_conflict(self, db_session, booking_service, team, make_booking):
        customer, professional = team
        booking = await make_booking(customer, professional)
        await db_session.commit()
        # A concurrent writer bumps the row version behind this session's back.
        await db_session.execute(
            update(Booking)
            .where(Booking.id == booking.id)
            .values(version=Booking.version + 1)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConflictError):
            await booking_service.quotes.submit_quote(
                booking.id,
                Caller.from_user(professional),
                QuoteSubmit(amount=Decimal("100"), currency="EUR"),
            )

    async def test_concurrent_completion_captures_once(self, tmp_path, fake_gateway, notifier, settings):
        # Separate connections need a file database; in-memory SQLite shares one.
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        customer = User(id=str(uuid.uuid4()), email="c@test.com", name="Customer", role="customer")
        professional = User(id=str(uuid.uuid4()), email="p@test.com", name="Pro", role="professional")
        booking_id = str(uuid.uuid4())
        async with sessions() as setup:
            setup.add_all([customer, professional])
            setup.add(
                Booking(
                    id=booking_id,
                    booking_type="professional",
                    status="in_progress",
                    customer_id=customer.id,
                    professional_id=professional.id,
                    rfq_data={"description": "Fix it"},
                    assigned_resource_ids=[],
                    quote_amount=Decimal("1000"),
                    quote_currency="EUR",
                )
            )
            await setup.flush()
            await add_payment(setup, await setup.get(Booking, booking_id))
            await setup.commit()

        try:
            async with sessions() as first_db, sessions() as second_db:
                first = BookingService(first_db, fake_gateway, notifier, settings)
                second = BookingService(second_db, fake_gateway, notifier, settings)
                # Both requests load the booking and its authorized payment up front.
                for service in (first, second):
                    assert await service.payment_status(await service.get_booking(booking_id)) == (
                        PaymentStatus.AUTHORIZED
                    )

                await first.update_status(booking_id, Caller.from_user(customer), S.COMPLETED)
                await first_db.commit()

                with pytest.raises(ConflictError):
                    await second.update_status(booking_id, Caller.from_user(customer), S.COMPLETED)
                await second_db.rollback()

            assert len(fake_gateway.captures) == 1
            async with sessions() as check:
                stored = await check.get(Booking, booking_id)
                assert stored.status == S.COMPLETED.value
                assert await event_types(check, booking_id) == ["completed", "payment_released"]
        finally:
            await engine.dispose()


# ---------------------------------------------------------------------------
# Post-booking answers and notifications
# ---------------------------------------------------------------------------

QUESTIONS = [
    {"id": "access", "question": "How do we get in?", "type": "text", "is_required": True},
    {"id": "floor", "question": "Which floor?", "type": "multiple_choice", "options": ["ground", "first"]},
]


class TestPostBookingAnswers:
    @pytest.fixture
    async def booked(self, team, make_project, make_booking):
        customer, professional = team
        project = await make_project(professional, post_booking_questions=QUESTIONS)
        return await make_booking(customer, professional, project, status="booked")

    async def test_answers_are_stored_once(self, booking_service, team, booked):
        customer, _ = team
        answers = [
            PostBookingAnswer(question_id="access", answer="Key under the mat"),
            PostBookingAnswer(question_id="floor", answer="first"),
        ]

        result = await booking_service.submit_post_booking_answers(booked.id, Caller.from_user(customer), answers)

        stored = result.post_booking_data["answers"]
        assert [a["answer"] for a in stored] == ["Key under the mat", "first"]
        assert result.post_booking_data["submitted_by"] == customer.id

        with pytest.raises(ConflictError):
            await booking_service.submit_post_booking_answers(booked.id, Caller.from_user(customer), answers)

    async def test_required_question_missing(self, booking_service, team, booked):
        customer, _ = team
        with pytest.raises(ValidationError) as exc:
            await booking_service.submit_post_booking_answers(
                booked.id, Caller.from_user(customer), [PostBookingAnswer(question_id="floor", answer="ground")]
            )
        assert exc.value.field == "answers.access"

    async def test_choice_must_be_an_option(self, booking_service, team, booked):
        customer, _ = team
        answers = [
            PostBookingAnswer(question_id="access", answer="Code 1234"),
            PostBookingAnswer(question_id="floor", answer="roof"),
        ]
        with pytest.raises(ValidationError) as exc:
            await booking_service.submit_post_booking_answers(booked.id, Caller.from_user(customer), answers)
        assert exc.value.field == "answers.floor"

    async def test_unknown_question(self, booking_service, team, booked):
        customer, _ = team
        answers = [
            PostBookingAnswer(question_id="access", answer="Code 1234"),
            PostBookingAnswer(question_id="pets", answer="a cat"),
        ]
        with pytest.raises(ValidationError):
            await booking_service.submit_post_booking_answers(booked.id, Caller.from_user(customer), answers)

    async def test_only_customer_answers(self, booking_service, team, booked):
        _, professional = team
        with pytest.raises(ForbiddenError):
            await booking_service.submit_post_booking_answers(booked.id, Caller.from_user(professional), [])

    async def test_not_accepted_before_payment(self, booking_service, team, make_booking):
        customer, professional = team
        booking = await make_booking(customer, professional)
        with pytest.raises(ValidationError) as exc:
            await booking_service.submit_post_booking_answers(booking.id, Caller.from_user(customer), [])
        assert exc.value.field == "status"


async def test_notification_failure_does_not_fail_the_operation(
    db_session, fake_gateway, failing_notifier, settings, team, make_booking
):
    customer, professional = team
    booking = await make_booking(customer, professional)
    service = BookingService(db_session, fake_gateway, failing_notifier, settings)

    result = await service.quotes.submit_quote(
        booking.id, Caller.from_user(professional), QuoteSubmit(amount=Decimal("250"), currency="EUR")
    )

    assert result.status == S.QUOTED.value
