"""Background job for payment authorization expiry."""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixera_platform.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    PaymentStatus,
)
from fixera_platform.domain.errors import BookingError
from fixera_platform.domain.models import Booking, Payment
from fixera_platform.infra.notifier import Notifier
from fixera_platform.infra.payment_gateway import PaymentGateway
from fixera_platform.services.booking_service import BookingService

logger = logging.getLogger(__name__)

# Payment states that still hold (or may still hold) customer funds
HOLD_ACTIVE_STATUSES = {
    PaymentStatus.PENDING.value,
    PaymentStatus.AUTHORIZED.value,
}

EXPIRY_REASON = "payment authorization expired"


async def expire_stale_authorizations(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> int:
    """Cancel ``payment_pending`` bookings whose authorization lapsed.

    Each booking is committed on its own so one gateway failure does not undo
    the others. Returns the number of bookings expired.
    """
    now = now or datetime.now(timezone.utc)

    result = await db.execute(
        select(Booking.id)
        .join(Payment, Payment.booking_id == Booking.id)
        .where(
            Booking.status == BookingStatus.PAYMENT_PENDING.value,
            Payment.status.in_(list(HOLD_ACTIVE_STATUSES)),
            Payment.authorization_expires_at.isnot(None),
            Payment.authorization_expires_at < now,
        )
    )
    booking_ids = list(result.scalars().all())

    service = BookingService(db, gateway, notifier)
    expired = 0
    for booking_id in booking_ids:
        try:
            booking = await service.get_booking(booking_id)
            await service.cancel(
                booking,
                BookingActor.SYSTEM,
                "system",
                EXPIRY_REASON,
                payment_final_status=PaymentStatus.EXPIRED,
            )
            await service.record_event(
                booking,
                BookingEventType.PAYMENT_EXPIRED,
                BookingActor.SYSTEM,
                "system",
                {"expired_at": now.isoformat()},
            )
            await db.commit()
        except BookingError as e:
            await db.rollback()
            logger.error("Could not expire booking %s: %s", booking_id, e)
            continue

        expired += 1
        logger.info("Authorization expired: booking=%s", booking_id)

    return expired
