"""Booking lifecycle orchestration.

Every status change goes through ``BookingStateMachine`` and produces a
``BookingEvent`` audit record. Status writes and their money side effects run
in the same session transaction: when the side effect fails the session is
rolled back, so the booking keeps its previous status.

Concurrent writers of one booking are serialized by the row's version
counter; the losing flush surfaces as ``ConflictError``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from fixera_platform.app.config import Settings, get_settings
from fixera_platform.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    BookingType,
    NotificationEvent,
    PaymentStatus,
    QuestionType,
    UserRole,
)
from fixera_platform.domain.errors import (
    BookingError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ScheduleConflictError,
    ValidationError,
)
from fixera_platform.domain.models import Booking, BookingEvent, Payment, User
from fixera_platform.domain.schemas import (
    BookingCreate,
    PaymentWebhook,
    PostBookingAnswer,
    PostBookingQuestion,
)
from fixera_platform.infra.notifier import LoggingNotifier, Notifier, Recipient
from fixera_platform.infra.payment_gateway import PaymentGateway
from fixera_platform.services.booking_state_machine import (
    QUOTE_STATES,
    SCHEDULED_STATES,
    BookingStateMachine,
)
from fixera_platform.services.escrow_coordinator import EscrowPaymentCoordinator
from fixera_platform.services.quote_negotiation import QuoteNegotiation
from fixera_platform.services.scheduling_engine import ScheduleProposal
from fixera_platform.services.scheduling_service import SchedulingService, parse_subproject
from fixera_platform.services.timezone_projector import ensure_utc

logger = logging.getLogger(__name__)

S = BookingStatus
A = BookingActor
T = TypeVar("T")

POST_BOOKING_ANSWER_STATES = {S.PAYMENT_PENDING, S.BOOKED, S.IN_PROGRESS}


@dataclass(frozen=True)
class Caller:
    """Authenticated user acting on a booking."""

    user_id: str
    role: UserRole

    @classmethod
    def from_user(cls, user: User) -> "Caller":
        return cls(user_id=user.id, role=UserRole(user.role))


def resolve_actor(booking: Booking, caller: Caller) -> BookingActor:
    """Map a caller to their role on this booking. Non-parties are forbidden."""
    if caller.role == UserRole.ADMIN:
        return A.ADMIN
    if caller.user_id == booking.customer_id:
        return A.CUSTOMER
    if caller.user_id == booking.professional_id:
        return A.PROFESSIONAL
    raise ForbiddenError("Not a party to this booking")


def _status(booking: Booking) -> BookingStatus:
    return BookingStatus(booking.status)


@dataclass
class CallbackResult:
    """Outcome of a payment gateway callback."""

    booking: Booking
    payment: Payment
    booked: bool
    conflict: Optional[ScheduleConflictError] = None


class BookingService:
    """Creates bookings and drives them through their lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.notifier = notifier or LoggingNotifier()
        self.state_machine = BookingStateMachine()
        self.scheduling = SchedulingService(db, self.settings)
        self.escrow = EscrowPaymentCoordinator(db, gateway, self.settings)
        self.quotes = QuoteNegotiation(self)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: str) -> Booking:
        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def get_booking_for(self, booking_id: str, caller: Caller) -> tuple[Booking, BookingActor]:
        booking = await self.get_booking(booking_id)
        return booking, resolve_actor(booking, caller)

    async def payment_status(self, booking: Booking) -> Optional[PaymentStatus]:
        payment = await self.escrow.find_payment(booking.id)
        return PaymentStatus(payment.status) if payment else None

    async def allowed_actions(self, booking: Booking, actor: BookingActor) -> list[str]:
        return [s.value for s in self.state_machine.get_allowed_transitions(_status(booking), actor)]

    async def get_timeline(self, booking_id: str, caller: Caller) -> list[BookingEvent]:
        await self.get_booking_for(booking_id, caller)
        result = await self.db.execute(
            select(BookingEvent)
            .where(BookingEvent.booking_id == booking_id)
            .order_by(BookingEvent.created_at.asc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transition core
    # ------------------------------------------------------------------

    @staticmethod
    def _clear_fields_outside(booking: Booking, target: BookingStatus) -> dict[str, Any]:
        """Drop quote/schedule fields the target state may not carry; return what was dropped."""
        dropped: dict[str, Any] = {}
        if target not in QUOTE_STATES and booking.quote_amount is not None:
            dropped["quote"] = {
                "amount": str(booking.quote_amount),
                "currency": booking.quote_currency,
                "description": booking.quote_description,
            }
            booking.quote_amount = None
            booking.quote_currency = None
            booking.quote_description = None
            booking.quote_breakdown = None
            booking.quote_submitted_at = None
            booking.quote_submitted_by = None
        if target not in SCHEDULED_STATES and booking.scheduled_start_date is not None:
            dropped["schedule"] = {
                "start": ensure_utc(booking.scheduled_start_date).isoformat(),
                "end": (
                    ensure_utc(booking.scheduled_end_date).isoformat()
                    if booking.scheduled_end_date else None
                ),
                "resource_ids": list(booking.assigned_resource_ids or []),
            }
            booking.scheduled_intake_start = None
            booking.scheduled_start_date = None
            booking.scheduled_end_date = None
            booking.scheduled_execution_end = None
            booking.assigned_resource_ids = []
        return dropped

    async def _flush(self):
        try:
            await self.db.flush()
        except StaleDataError as e:
            raise ConflictError("Booking was modified concurrently; reload and retry") from e

    async def transition(
        self,
        booking: Booking,
        target_status: BookingStatus,
        actor: BookingActor,
        actor_id: Optional[str],
        event_type: BookingEventType,
        extra_data: Optional[dict] = None,
        payment_status: Optional[PaymentStatus] = None,
    ) -> Booking:
        """Validate and execute a state transition, creating an audit event."""
        current = _status(booking)
        self.state_machine.validate_transition(current, target_status, actor, payment_status)

        data = dict(extra_data or {})
        dropped = self._clear_fields_outside(booking, target_status)
        if dropped:
            data["cleared"] = dropped

        booking.status = target_status.value
        booking.updated_at = datetime.now(timezone.utc)
        self.db.add(
            BookingEvent(
                booking_id=booking.id,
                event_type=event_type.value,
                actor=actor.value,
                actor_id=actor_id,
                from_status=current.value,
                to_status=target_status.value,
                data=data or None,
            )
        )
        await self._flush()

        logger.info(
            "Booking %s: %s → %s (actor=%s, user=%s)",
            booking.id,
            current.value,
            target_status.value,
            actor.value,
            actor_id,
        )
        return booking

    async def record_event(
        self,
        booking: Booking,
        event_type: BookingEventType,
        actor: BookingActor,
        actor_id: Optional[str],
        data: Optional[dict] = None,
    ):
        """Audit an event that does not change status."""
        self.db.add(
            BookingEvent(
                booking_id=booking.id,
                event_type=event_type.value,
                actor=actor.value,
                actor_id=actor_id,
                from_status=booking.status,
                to_status=booking.status,
                data=data,
            )
        )
        await self.db.flush()

    async def run_side_effect(self, booking: Booking, side_effect: Awaitable[T]) -> T:
        """Await a money side effect; on failure roll back the pending status write."""
        try:
            return await side_effect
        except BookingError:
            logger.warning("Side effect failed for booking %s; rolling back status write", booking.id)
            await self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Notifications (best effort)
    # ------------------------------------------------------------------

    async def notify(self, event: NotificationEvent, user_ids: list[str], payload: dict[str, Any]):
        for user_id in user_ids:
            user = await self.scheduling.get_user(user_id)
            recipient = Recipient(
                user_id=user_id,
                email=user.email if user else None,
                name=user.name if user else None,
            )
            try:
                await self.notifier.send(event, recipient, payload)
            except Exception as e:
                logger.warning("Notification %s to %s failed: %s", event.value, user_id, e)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_booking(self, caller: Caller, data: BookingCreate) -> Booking:
        """Submit an RFQ. Only customers create bookings."""
        if caller.role != UserRole.CUSTOMER:
            raise ForbiddenError("Only customers can request quotes")

        if data.booking_type == BookingType.PROJECT:
            project = await self.scheduling.get_project(data.project_id)
            parse_subproject(project, data.subproject_index)
            professional_id = project.professional_id
        else:
            professional = await self.scheduling.get_user(data.professional_id)
            if professional is None or professional.role != UserRole.PROFESSIONAL.value:
                raise NotFoundError(f"Professional {data.professional_id} not found")
            professional_id = professional.id

        if professional_id == caller.user_id:
            raise ValidationError("professional_id", "cannot book yourself")

        preferred = data.rfq_data.preferred_start_date
        booking = Booking(
            booking_type=data.booking_type.value,
            status=S.RFQ.value,
            customer_id=caller.user_id,
            professional_id=professional_id,
            project_id=data.project_id if data.booking_type == BookingType.PROJECT else None,
            subproject_index=data.subproject_index if data.booking_type == BookingType.PROJECT else None,
            rfq_data=data.rfq_data.model_dump(mode="json"),
            requested_start=ensure_utc(preferred) if preferred else None,
            assigned_resource_ids=[],
        )
        self.db.add(booking)
        await self.db.flush()
        await self.record_event(
            booking,
            BookingEventType.RFQ_SUBMITTED,
            A.CUSTOMER,
            caller.user_id,
            {"booking_type": data.booking_type.value},
        )
        logger.info("Booking %s created (rfq) by customer %s", booking.id, caller.user_id)
        return booking

    # ------------------------------------------------------------------
    # Commit (payment_pending -> booked)
    # ------------------------------------------------------------------

    async def confirm_booking(
        self,
        booking: Booking,
        start: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Re-validate the slot and move the booking to ``booked``.

        Raises ``ScheduleConflictError`` with a fresh proposal when the slot is
        gone; the booking then stays ``payment_pending``.
        """
        now = now or datetime.now(timezone.utc)
        payment_status = await self.payment_status(booking)
        self.state_machine.validate_transition(_status(booking), S.BOOKED, A.SYSTEM, payment_status)

        start = start or booking.requested_start
        if booking.booking_type == BookingType.PROJECT.value:
            if start is None:
                _, outcome = await self.scheduling.get_schedule_proposals(
                    booking.project_id, booking.subproject_index, now
                )
                if not isinstance(outcome, ScheduleProposal):
                    raise ScheduleConflictError("No availability within the horizon", proposal=outcome)
                start = outcome.earliest_proposal.start
            window, request = await self.scheduling.validate_commit(booking, ensure_utc(start), now)
            booking.scheduled_intake_start = window.start - request.intake
            booking.scheduled_start_date = window.start
            booking.scheduled_end_date = window.end
            booking.scheduled_execution_end = window.execution_end
            booking.assigned_resource_ids = list(window.resource_ids)
        else:
            start = ensure_utc(start or now)
            booking.scheduled_intake_start = start
            booking.scheduled_start_date = start
            booking.scheduled_end_date = None
            booking.scheduled_execution_end = None
            booking.assigned_resource_ids = [booking.professional_id]

        await self.transition(
            booking,
            S.BOOKED,
            A.SYSTEM,
            actor_id or "system",
            BookingEventType.BOOKED,
            {
                "start": booking.scheduled_start_date.isoformat(),
                "end": booking.scheduled_end_date.isoformat() if booking.scheduled_end_date else None,
                "resource_ids": booking.assigned_resource_ids,
            },
            payment_status=payment_status,
        )
        await self.notify(
            NotificationEvent.BOOKING_CONFIRMED,
            [booking.customer_id, booking.professional_id],
            {"booking_id": booking.id, "start": booking.scheduled_start_date.isoformat()},
        )
        return booking

    async def handle_payment_callback(self, webhook: PaymentWebhook, now: Optional[datetime] = None) -> CallbackResult:
        """Apply a gateway callback and, once authorized, try to commit the booking."""
        payment, changed = await self.escrow.record_gateway_result(
            webhook.gateway_payment_id, webhook.status, webhook.failure_reason
        )
        booking = await self.get_booking(payment.booking_id)

        if payment.status == PaymentStatus.FAILED.value:
            if changed:
                await self.record_event(
                    booking,
                    BookingEventType.PAYMENT_FAILED,
                    A.SYSTEM,
                    "system",
                    {"reason": payment.failure_reason},
                )
            return CallbackResult(booking=booking, payment=payment, booked=False)

        if payment.status != PaymentStatus.AUTHORIZED.value or _status(booking) != S.PAYMENT_PENDING:
            return CallbackResult(booking=booking, payment=payment, booked=False)

        if changed:
            await self.record_event(
                booking,
                BookingEventType.PAYMENT_AUTHORIZED,
                A.SYSTEM,
                "system",
                {"payment_id": payment.id},
            )

        try:
            await self.confirm_booking(booking, now=now)
        except ScheduleConflictError as e:
            await self.record_event(
                booking,
                BookingEventType.SCHEDULE_CONFLICT,
                A.SYSTEM,
                "system",
                {"reason": e.message},
            )
            await self.notify(
                NotificationEvent.SCHEDULE_CONFLICT,
                [booking.customer_id],
                {"booking_id": booking.id, "reason": e.message},
            )
            return CallbackResult(booking=booking, payment=payment, booked=False, conflict=e)

        return CallbackResult(booking=booking, payment=payment, booked=True)

    async def reschedule(self, booking_id: str, caller: Caller, start: datetime) -> Booking:
        """Customer picks a new start after a conflict and re-commits."""
        booking, actor = await self.get_booking_for(booking_id, caller)
        if actor not in (A.CUSTOMER, A.ADMIN):
            raise ForbiddenError("Only the customer can choose a new start")
        booking.requested_start = ensure_utc(start)
        return await self.confirm_booking(booking, booking.requested_start, actor_id=caller.user_id)

    # ------------------------------------------------------------------
    # Lifecycle after booking
    # ------------------------------------------------------------------

    async def start_work(self, booking: Booking, actor: BookingActor, actor_id: str) -> Booking:
        await self.transition(
            booking,
            S.IN_PROGRESS,
            actor,
            actor_id,
            BookingEventType.WORK_STARTED,
            payment_status=await self.payment_status(booking),
        )
        await self.notify(NotificationEvent.WORK_STARTED, [booking.customer_id], {"booking_id": booking.id})
        return booking

    async def complete(self, booking: Booking, actor: BookingActor, actor_id: str) -> Booking:
        """Customer confirms completion; held funds are captured exactly once."""
        await self.transition(
            booking,
            S.COMPLETED,
            actor,
            actor_id,
            BookingEventType.COMPLETED,
            payment_status=await self.payment_status(booking),
        )
        payment = await self.run_side_effect(booking, self.escrow.release(booking))
        await self.record_event(
            booking,
            BookingEventType.PAYMENT_RELEASED,
            A.SYSTEM,
            "system",
            {"payment_id": payment.id, "net_amount": str(payment.net_amount)},
        )
        await self.notify(
            NotificationEvent.BOOKING_COMPLETED,
            [booking.customer_id, booking.professional_id],
            {"booking_id": booking.id},
        )
        return booking

    async def cancel(
        self,
        booking: Booking,
        actor: BookingActor,
        actor_id: Optional[str],
        reason: Optional[str] = None,
        payment_final_status: Optional[PaymentStatus] = None,
    ) -> Booking:
        """Cancel and release any hold. Role rules live in the state machine."""
        previous = _status(booking)
        self.state_machine.validate_transition(previous, S.CANCELLED, actor)

        now = datetime.now(timezone.utc)
        booking.cancelled_by = actor.value
        booking.cancel_reason = reason
        booking.cancelled_at = now
        await self.transition(
            booking,
            S.CANCELLED,
            actor,
            actor_id,
            BookingEventType.CANCELLED,
            {"reason": reason},
        )
        if previous in (S.QUOTE_ACCEPTED, S.PAYMENT_PENDING):
            await self.run_side_effect(
                booking,
                self.escrow.release_hold(booking, reason or "booking cancelled", payment_final_status),
            )

        others = [
            uid for uid in (booking.customer_id, booking.professional_id) if uid != actor_id
        ]
        await self.notify(
            NotificationEvent.BOOKING_CANCELLED,
            others,
            {"booking_id": booking.id, "cancelled_by": actor.value, "reason": reason},
        )
        return booking

    async def raise_dispute(
        self, booking: Booking, actor: BookingActor, actor_id: str, reason: Optional[str]
    ) -> Booking:
        if not reason or not reason.strip():
            raise ValidationError("reason", "a dispute needs a reason")
        self.state_machine.validate_transition(_status(booking), S.DISPUTE, actor)

        booking.dispute_raised_by = actor.value
        booking.dispute_reason = reason.strip()
        booking.dispute_raised_at = datetime.now(timezone.utc)
        await self.transition(
            booking,
            S.DISPUTE,
            actor,
            actor_id,
            BookingEventType.DISPUTE_RAISED,
            {"reason": booking.dispute_reason},
        )
        other = booking.professional_id if actor == A.CUSTOMER else booking.customer_id
        await self.notify(
            NotificationEvent.DISPUTE_RAISED,
            [other],
            {"booking_id": booking.id, "reason": booking.dispute_reason},
        )
        return booking

    async def resolve_refund(
        self,
        booking: Booking,
        actor: BookingActor,
        actor_id: str,
        reason: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> Booking:
        """Admin resolves a dispute by refunding the customer (fully or in part)."""
        await self.transition(
            booking,
            S.REFUNDED,
            actor,
            actor_id,
            BookingEventType.REFUNDED,
            {"reason": reason, "amount": str(amount) if amount is not None else "full"},
        )
        payment = await self.run_side_effect(
            booking, self.escrow.refund(booking, reason or "dispute resolved", amount)
        )
        await self.notify(
            NotificationEvent.REFUND_ISSUED,
            [booking.customer_id, booking.professional_id],
            {"booking_id": booking.id, "payment_status": payment.status if payment else None},
        )
        return booking

    async def update_status(
        self,
        booking_id: str,
        caller: Caller,
        status: BookingStatus,
        reason: Optional[str] = None,
        refund_amount: Optional[Decimal] = None,
    ) -> Booking:
        """Generic status change, routed to the operation that owns the target status."""
        booking, actor = await self.get_booking_for(booking_id, caller)

        if status == S.CANCELLED:
            return await self.cancel(booking, actor, caller.user_id, reason)
        if status == S.IN_PROGRESS:
            return await self.start_work(booking, actor, caller.user_id)
        if status == S.COMPLETED:
            return await self.complete(booking, actor, caller.user_id)
        if status == S.DISPUTE:
            return await self.raise_dispute(booking, actor, caller.user_id, reason)
        if status == S.REFUNDED:
            return await self.resolve_refund(booking, actor, caller.user_id, reason, refund_amount)
        if status in (S.QUOTE_ACCEPTED, S.QUOTE_REJECTED):
            action = "accept" if status == S.QUOTE_ACCEPTED else "reject"
            booking, _ = await self.quotes.respond_to_quote(booking_id, caller, action, reason)
            return booking
        if status == S.RFQ:
            return await self.quotes.reopen(booking_id, caller, reason)

        # quoted, payment_pending, booked: validate so callers get the precise error.
        self.state_machine.validate_transition(
            _status(booking), status, actor, await self.payment_status(booking)
        )
        raise ValidationError("status", f"{status.value} is set by its own operation, not directly")

    # ------------------------------------------------------------------
    # Post-booking answers
    # ------------------------------------------------------------------

    async def submit_post_booking_answers(
        self,
        booking_id: str,
        caller: Caller,
        answers: list[PostBookingAnswer],
    ) -> Booking:
        """Store the customer's answers once; resubmission is rejected."""
        booking, actor = await self.get_booking_for(booking_id, caller)
        if actor != A.CUSTOMER:
            raise ForbiddenError("Only the customer answers post-booking questions")
        if booking.post_booking_data:
            raise ConflictError("Post-booking answers were already submitted")
        if _status(booking) not in POST_BOOKING_ANSWER_STATES:
            raise ValidationError("status", f"answers are not accepted while {booking.status}")

        questions: list[PostBookingQuestion] = []
        if booking.project_id:
            project = await self.scheduling.get_project(booking.project_id)
            questions = [PostBookingQuestion.model_validate(q) for q in project.post_booking_questions or []]
        cleaned = validate_answers(questions, answers)

        booking.post_booking_data = {
            "answers": cleaned,
            "submitted_at": datetime.now(timezone.utc).isoformat(),
            "submitted_by": caller.user_id,
        }
        self.db.add(
            BookingEvent(
                booking_id=booking.id,
                event_type=BookingEventType.POST_BOOKING_ANSWERS_SUBMITTED.value,
                actor=actor.value,
                actor_id=caller.user_id,
                from_status=booking.status,
                to_status=booking.status,
                data={"count": len(cleaned)},
            )
        )
        await self._flush()
        logger.info("Booking %s: %d post-booking answers stored", booking.id, len(cleaned))
        return booking


def validate_answers(
    questions: list[PostBookingQuestion], answers: list[PostBookingAnswer]
) -> list[dict[str, Any]]:
    """Check answers against the project's questions and return them in storable form."""
    by_id = {q.id: q for q in questions}
    seen: dict[str, PostBookingAnswer] = {}
    for answer in answers:
        if answer.question_id not in by_id:
            raise ValidationError(f"answers.{answer.question_id}", "unknown question")
        if answer.question_id in seen:
            raise ValidationError(f"answers.{answer.question_id}", "answered more than once")
        seen[answer.question_id] = answer

    cleaned = []
    for question in questions:
        answer = seen.get(question.id)
        value = answer.answer if answer else None
        values = value if isinstance(value, list) else ([value] if value else [])
        values = [v.strip() for v in values if isinstance(v, str) and v.strip()]
        if not values:
            if question.is_required:
                raise ValidationError(f"answers.{question.id}", "this question is required")
            continue
        if question.type == QuestionType.MULTIPLE_CHOICE:
            invalid = [v for v in values if v not in question.options]
            if invalid:
                raise ValidationError(f"answers.{question.id}", f"not an option: {', '.join(invalid)}")
        elif isinstance(value, list) and question.type == QuestionType.TEXT:
            raise ValidationError(f"answers.{question.id}", "expected a single text answer")
        cleaned.append(
            {
                "question_id": question.id,
                "question": question.question,
                "answer": values if isinstance(value, list) else values[0],
            }
        )
    return cleaned
