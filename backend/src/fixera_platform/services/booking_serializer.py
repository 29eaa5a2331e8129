"""Response shapes for bookings, proposals, projects and payments."""

from datetime import datetime
from typing import Optional, Union

from fixera_platform.domain.enums import BookingActor, TimeMode
from fixera_platform.domain.errors import NoAvailability
from fixera_platform.domain.models import Booking, BookingEvent, Payment, Project
from fixera_platform.domain.schemas import (
    BookingEventResponse,
    BookingResponse,
    PaymentResponse,
    ProjectedLabel,
    ProjectResponse,
    ProposalWindowResponse,
    QuoteView,
)
from fixera_platform.services.scheduling_engine import ProposalWindow, ScheduleProposal
from fixera_platform.services.timezone_projector import ensure_utc, project_window


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def serialize_booking(
    booking: Booking,
    payment_status: Optional[str] = None,
    allowed_actions: Optional[list[str]] = None,
    actor: Optional[BookingActor] = None,
) -> BookingResponse:
    """Role-filtered booking view. Internal resource assignments are hidden from customers."""
    quote = None
    if booking.quote_amount is not None:
        quote = QuoteView(
            amount=booking.quote_amount,
            currency=booking.quote_currency,
            description=booking.quote_description,
            breakdown=booking.quote_breakdown,
            submitted_at=_utc(booking.quote_submitted_at),
        )
    show_resources = actor != BookingActor.CUSTOMER
    return BookingResponse(
        id=booking.id,
        booking_type=booking.booking_type,
        status=booking.status,
        customer_id=booking.customer_id,
        professional_id=booking.professional_id,
        project_id=booking.project_id,
        subproject_index=booking.subproject_index,
        rfq_data=booking.rfq_data or {},
        requested_start=_utc(booking.requested_start),
        quote=quote,
        scheduled_start_date=_utc(booking.scheduled_start_date),
        scheduled_end_date=_utc(booking.scheduled_end_date),
        scheduled_execution_end=_utc(booking.scheduled_execution_end),
        assigned_resource_ids=list(booking.assigned_resource_ids or []) if show_resources else [],
        post_booking_data=booking.post_booking_data,
        payment_status=payment_status,
        cancel_reason=booking.cancel_reason,
        dispute_reason=booking.dispute_reason,
        allowed_actions=allowed_actions or [],
        created_at=_utc(booking.created_at),
        updated_at=_utc(booking.updated_at),
    )


def serialize_event(event: BookingEvent) -> BookingEventResponse:
    return BookingEventResponse(
        id=event.id,
        event_type=event.event_type,
        actor=event.actor,
        actor_id=event.actor_id,
        from_status=event.from_status,
        to_status=event.to_status,
        data=event.data,
        created_at=_utc(event.created_at),
    )


def _window(
    window: Optional[ProposalWindow],
    mode: TimeMode,
    professional_tz: Optional[str],
    viewer_tz: Optional[str],
) -> Optional[ProposalWindowResponse]:
    if window is None:
        return None
    label = None
    if professional_tz is not None:
        projected = project_window(window.start, window.end, professional_tz, viewer_tz, mode)
        label = ProjectedLabel(
            professional_zone=projected.professional_zone,
            viewer_zone=projected.viewer_zone,
            professional_label=projected.professional_label,
            viewer_label=projected.viewer_label,
        )
    return ProposalWindowResponse(
        start=window.start,
        end=window.end,
        execution_end=window.execution_end,
        resource_ids=list(window.resource_ids),
        label=label,
    )


def proposal_body(
    outcome: Union[ScheduleProposal, NoAvailability],
    mode: TimeMode,
    professional_tz: Optional[str] = None,
    viewer_tz: Optional[str] = None,
) -> dict:
    """Proposal fields shared by the proposals endpoint and conflict responses."""
    if isinstance(outcome, NoAvailability):
        return {
            "mode": mode,
            "available": False,
            "reason": outcome.reason,
        }
    return {
        "mode": outcome.mode,
        "available": True,
        "earliest_bookable_date": outcome.earliest_bookable_date,
        "earliest_proposal": _window(outcome.earliest_proposal, outcome.mode, professional_tz, viewer_tz),
        "shortest_throughput_proposal": _window(
            outcome.shortest_throughput_proposal, outcome.mode, professional_tz, viewer_tz
        ),
    }


def serialize_project(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        professional_id=project.professional_id,
        title=project.title,
        category=project.category,
        service=project.service,
        description=project.description,
        time_mode=project.time_mode,
        resource_ids=list(project.resource_ids or []),
        min_resources=project.min_resources,
        min_overlap_percentage=project.min_overlap_percentage,
        preparation_duration=project.preparation_duration,
        subprojects=list(project.subprojects or []),
        post_booking_questions=list(project.post_booking_questions or []),
        created_at=_utc(project.created_at),
    )


def serialize_payment(payment: Payment, include_secret: bool = False) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        booking_id=payment.booking_id,
        status=payment.status,
        amount=payment.amount,
        currency=payment.currency,
        vat_rate=payment.vat_rate,
        vat_amount=payment.vat_amount,
        total_with_vat=payment.total_with_vat,
        platform_commission=payment.platform_commission,
        net_amount=payment.net_amount,
        refunded_amount=payment.refunded_amount or 0,
        refunds=list(payment.refunds or []),
        gateway_payment_id=payment.gateway_payment_id,
        client_secret=payment.client_secret if include_secret else None,
        failure_reason=payment.failure_reason,
        authorized_at=_utc(payment.authorized_at),
        authorization_expires_at=_utc(payment.authorization_expires_at),
        captured_at=_utc(payment.captured_at),
        refunded_at=_utc(payment.refunded_at),
        created_at=_utc(payment.created_at),
    )
