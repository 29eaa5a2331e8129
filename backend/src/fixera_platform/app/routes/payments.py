"""Payment gateway webhook and admin payment endpoints."""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from fixera_platform.app.config import Settings, get_settings
from fixera_platform.app.routes.auth import require_role
from fixera_platform.app.routes.bookings import get_booking_service
from fixera_platform.app.routes.common import to_http_exception
from fixera_platform.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    NotificationEvent,
    PaymentStatus,
    UserRole,
)
from fixera_platform.domain.errors import BookingError
from fixera_platform.domain.models import User
from fixera_platform.domain.schemas import PaymentResponse, PaymentWebhook, RefundRequest
from fixera_platform.services.booking_serializer import proposal_body, serialize_payment
from fixera_platform.services.booking_service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/api/payments/webhook")
async def payment_webhook(
    body: PaymentWebhook,
    x_webhook_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    service: BookingService = Depends(get_booking_service),
):
    """Gateway reports an authorization outcome. Duplicate deliveries are no-ops.

    A scheduling conflict at commit time is reported in the body, not as an
    error: the hold stays in place and the customer picks a new start.
    """
    if settings.payment_webhook_secret and not hmac.compare_digest(
        x_webhook_token or "", settings.payment_webhook_secret
    ):
        logger.warning("Invalid payment webhook token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
        )

    try:
        result = await service.handle_payment_callback(body)
        await service.db.commit()
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)

    response = {
        "ok": True,
        "booking_id": result.booking.id,
        "booking_status": result.booking.status,
        "payment_status": result.payment.status,
        "booked": result.booked,
    }
    if result.conflict is not None:
        response["conflict"] = {"message": result.conflict.message}
        if result.conflict.proposal is not None:
            mode = getattr(result.conflict.proposal, "mode", None)
            response["conflict"]["proposal"] = proposal_body(result.conflict.proposal, mode)
    return response


# --- Admin ---


@router.get("/api/admin/payments", response_model=list[PaymentResponse])
async def list_payments(
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    _admin: User = Depends(require_role(UserRole.ADMIN.value)),
    service: BookingService = Depends(get_booking_service),
):
    payments = await service.escrow.list_payments(status_filter, limit)
    return [serialize_payment(p) for p in payments]


@router.post("/api/admin/payments/{booking_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    booking_id: str,
    body: RefundRequest,
    admin: User = Depends(require_role(UserRole.ADMIN.value)),
    service: BookingService = Depends(get_booking_service),
):
    """Full or partial refund. A disputed booking moves to ``refunded``; others keep their status."""
    try:
        booking = await service.get_booking(booking_id)
        if booking.status == BookingStatus.DISPUTE.value:
            await service.resolve_refund(booking, BookingActor.ADMIN, admin.id, body.reason, body.amount)
        else:
            await service.run_side_effect(booking, service.escrow.refund(booking, body.reason, body.amount))
            await service.record_event(
                booking,
                BookingEventType.REFUNDED,
                BookingActor.ADMIN,
                admin.id,
                {"reason": body.reason, "amount": str(body.amount) if body.amount is not None else "full"},
            )
            await service.notify(
                NotificationEvent.REFUND_ISSUED,
                [booking.customer_id],
                {"booking_id": booking.id, "reason": body.reason},
            )
        payment = await service.escrow.get_payment(booking_id)
        await service.db.commit()
    except BookingError as e:
        await service.db.rollback()
        raise to_http_exception(e)

    logger.info("Admin %s refunded booking %s (%s)", admin.id, booking_id, payment.status)
    return serialize_payment(payment)
