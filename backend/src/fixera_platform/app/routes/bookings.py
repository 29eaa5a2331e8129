"""Booking lifecycle API endpoints.

Every mutation goes through BookingService, which validates against the
BookingStateMachine and writes a BookingEvent audit record. Routes own the
transaction: commit on success, roll back on any domain error.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixera_platform.app.config import Settings, get_settings
from fixera_platform.app.routes.auth import get_current_user_dep
from fixera_platform.app.routes.common import get_notifier, get_payment_gateway, to_http_exception
from fixera_platform.domain.enums import BookingStatus, UserRole
from fixera_platform.domain.errors import BookingError
from fixera_platform.domain.models import Booking, User
from fixera_platform.domain.schemas import (
    BookingCreate,
    BookingEventResponse,
    BookingResponse,
    PostBookingAnswersSubmit,
    QuoteRespond,
    QuoteSubmit,
    ReopenRequest,
    ScheduleCommit,
    StatusUpdate,
)
from fixera_platform.infra.database import get_db
from fixera_platform.infra.notifier import Notifier
from fixera_platform.infra.payment_gateway import PaymentGateway
from fixera_platform.services.booking_serializer import serialize_booking, serialize_event
from fixera_platform.services.booking_service import BookingService, Caller, resolve_actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


def get_booking_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> BookingService:
    return BookingService(db, gateway, notifier, settings)


async def _view(service: BookingService, booking: Booking, caller: Caller) -> BookingResponse:
    actor = resolve_actor(booking, caller)
    payment_status = await service.payment_status(booking)
    return serialize_booking(
        booking,
        payment_status.value if payment_status else None,
        await service.allowed_actions(booking, actor),
        actor,
    )


async def _commit_and_view(service: BookingService, booking: Booking, caller: Caller) -> BookingResponse:
    await service.db.commit()
    return await _view(service, booking, caller)


@router.get("", response_model=list[BookingResponse])
async def list_bookings(
    status: Optional[BookingStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    """Bookings the caller is a party to (all bookings for admins)."""
    query = select(Booking).order_by(Booking.created_at.desc()).limit(limit)
    if user.role == UserRole.CUSTOMER.value:
        query = query.where(Booking.customer_id == user.id)
    elif user.role != UserRole.ADMIN.value:
        query = query.where(Booking.professional_id == user.id)
    if status is not None:
        query = query.where(Booking.status == status.value)

    result = await service.db.execute(query)
    caller = Caller.from_user(user)
    return [await _view(service, booking, caller) for booking in result.scalars().all()]


@router.post("", response_model=BookingResponse, status_code=201)
async def create_booking(
    body: BookingCreate,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    """Customer submits an RFQ."""
    caller = Caller.from_user(user)
    try:
        booking = await service.create_booking(caller, body)
        return await _commit_and_view(service, booking, caller)
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    caller = Caller.from_user(user)
    try:
        booking, _ = await service.get_booking_for(booking_id, caller)
        return await _view(service, booking, caller)
    except BookingError as e:
        raise to_http_exception(e)


@router.get("/{booking_id}/timeline", response_model=list[BookingEventResponse])
async def get_booking_timeline(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    """Audit trail of the booking, oldest first."""
    try:
        events = await service.get_timeline(booking_id, Caller.from_user(user))
    except BookingError as e:
        raise to_http_exception(e)
    return [serialize_event(e) for e in events]


# --- Quote negotiation ---


@router.post("/{booking_id}/quote", response_model=BookingResponse)
async def submit_quote(
    booking_id: str,
    body: QuoteSubmit,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    caller = Caller.from_user(user)
    try:
        booking = await service.quotes.submit_quote(booking_id, caller, body)
        return await _commit_and_view(service, booking, caller)
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)


@router.post("/{booking_id}/quote/respond", response_model=BookingResponse)
async def respond_to_quote(
    booking_id: str,
    body: QuoteRespond,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    """Accept starts payment authorization; reject ends the negotiation."""
    caller = Caller.from_user(user)
    try:
        booking, _ = await service.quotes.respond_to_quote(booking_id, caller, body.action, body.reason)
        return await _commit_and_view(service, booking, caller)
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)


@router.post("/{booking_id}/reopen", response_model=BookingResponse)
async def reopen_booking(
    booking_id: str,
    body: ReopenRequest,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    caller = Caller.from_user(user)
    try:
        booking = await service.quotes.reopen(booking_id, caller, body.reason)
        return await _commit_and_view(service, booking, caller)
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)


# --- Lifecycle ---


@router.post("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: str,
    body: StatusUpdate,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    caller = Caller.from_user(user)
    try:
        booking = await service.update_status(
            booking_id, caller, body.status, body.reason, body.refund_amount
        )
        return await _commit_and_view(service, booking, caller)
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)


@router.post("/{booking_id}/schedule", response_model=BookingResponse)
async def commit_schedule(
    booking_id: str,
    body: ScheduleCommit,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    """Pick a new start after a scheduling conflict and re-commit the booking."""
    caller = Caller.from_user(user)
    try:
        booking = await service.reschedule(booking_id, caller, body.start)
        return await _commit_and_view(service, booking, caller)
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)


@router.post("/{booking_id}/post-booking-answers", response_model=BookingResponse)
async def submit_post_booking_answers(
    booking_id: str,
    body: PostBookingAnswersSubmit,
    user: User = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    caller = Caller.from_user(user)
    try:
        booking = await service.submit_post_booking_answers(booking_id, caller, body.answers)
        return await _commit_and_view(service, booking, caller)
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)
