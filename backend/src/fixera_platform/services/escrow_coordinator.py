"""Escrow payment coordination.

Owns the payment row of a booking and every gateway call that moves money.
Each money-moving step first claims the payment with a conditional
``UPDATE ... WHERE status = <expected>`` and only calls the gateway when the
claim matched exactly one row, so two concurrent requests can never both
capture or both refund. If the gateway call then fails, the claim is undone
and ``PaymentFailureError`` propagates.

Captures retry with exponential backoff on transient failures. Refunds and
hold releases never retry; a failure is logged for operator follow-up.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fixera_platform.app.config import Settings, get_settings
from fixera_platform.domain.enums import GatewayCallbackStatus, PaymentStatus
from fixera_platform.domain.errors import (
    ConflictError,
    NotFoundError,
    PaymentFailureError,
    ValidationError,
)
from fixera_platform.domain.models import Booking, Payment
from fixera_platform.infra.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
P = PaymentStatus


def _money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_amounts(amount: Decimal, vat_rate: float, commission_percent: float) -> dict:
    """VAT, total, platform commission and professional payout for a quote amount."""
    amount = _money(amount)
    vat_amount = _money(amount * Decimal(str(vat_rate)) / 100)
    commission = _money(amount * Decimal(str(commission_percent)) / 100)
    return {
        "amount": amount,
        "vat_rate": vat_rate,
        "vat_amount": vat_amount,
        "total_with_vat": amount + vat_amount,
        "platform_commission": commission,
        "net_amount": amount - commission,
    }


class EscrowPaymentCoordinator:
    """Authorization, exactly-once capture, refunds and hold releases for bookings."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_payment(self, booking_id: str) -> Optional[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.booking_id == booking_id))
        return result.scalar_one_or_none()

    async def get_payment(self, booking_id: str) -> Payment:
        payment = await self.find_payment(booking_id)
        if payment is None:
            raise NotFoundError(f"No payment for booking {booking_id}")
        return payment

    async def get_by_gateway_id(self, gateway_payment_id: str) -> Payment:
        result = await self.db.execute(
            select(Payment).where(Payment.gateway_payment_id == gateway_payment_id)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Unknown gateway payment {gateway_payment_id}")
        return payment

    async def list_payments(self, status: Optional[PaymentStatus] = None, limit: int = 100) -> list[Payment]:
        query = select(Payment).order_by(Payment.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(Payment.status == status.value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Conditional updates
    # ------------------------------------------------------------------

    async def _claim(self, payment: Payment, expected: PaymentStatus, *conditions, **values) -> bool:
        """Move ``payment`` out of ``expected`` in one statement. True if this call won."""
        values.setdefault("updated_at", datetime.now(timezone.utc))
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == expected.value, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(payment)
        return result.rowcount == 1

    async def _undo(self, payment: Payment, claimed: PaymentStatus, **values):
        await self._claim(payment, claimed, **values)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def initiate_authorization(self, booking: Booking) -> Payment:
        """Place a hold for the accepted quote and record a pending payment."""
        if await self.find_payment(booking.id) is not None:
            raise ConflictError("Booking already has a payment")
        if booking.quote_amount is None or not booking.quote_currency:
            raise ValidationError("quote", "booking has no quote to pay for")

        amounts = compute_amounts(
            booking.quote_amount,
            self.settings.default_vat_rate,
            self.settings.platform_commission_percent,
        )
        authorization = await self.gateway.authorize(
            amounts["total_with_vat"],
            booking.quote_currency,
            idempotency_key=f"authorize_{booking.id}_{booking.version}",
            metadata={"booking_id": booking.id, "customer_id": booking.customer_id},
        )

        now = datetime.now(timezone.utc)
        payment = Payment(
            booking_id=booking.id,
            status=P.PENDING.value,
            currency=booking.quote_currency,
            gateway_payment_id=authorization.gateway_payment_id,
            client_secret=authorization.client_secret,
            authorization_expires_at=now + timedelta(hours=self.settings.payment_authorization_ttl_hours),
            refunds=[],
            **amounts,
        )
        self.db.add(payment)
        await self.db.flush()
        logger.info(
            "Payment %s pending for booking %s (%s %s)",
            payment.id, booking.id, payment.total_with_vat, payment.currency,
        )
        return payment

    async def record_gateway_result(
        self,
        gateway_payment_id: str,
        status: GatewayCallbackStatus,
        failure_reason: Optional[str] = None,
    ) -> tuple[Payment, bool]:
        """Apply a gateway callback. Returns ``(payment, changed)``; duplicates are no-ops."""
        payment = await self.get_by_gateway_id(gateway_payment_id)
        now = datetime.now(timezone.utc)

        if status == GatewayCallbackStatus.AUTHORIZED:
            changed = await self._claim(
                payment,
                P.PENDING,
                status=P.AUTHORIZED.value,
                authorized_at=now,
                authorization_expires_at=now + timedelta(hours=self.settings.payment_authorization_ttl_hours),
                failure_reason=None,
            )
            if changed:
                logger.info("Payment %s authorized", payment.id)
            elif payment.status in (P.EXPIRED.value, P.FAILED.value):
                # The booking was already given up; do not keep the customer's money on hold.
                logger.warning("Late authorization for %s payment %s, releasing", payment.status, payment.id)
                try:
                    await self.gateway.refund(
                        payment.gateway_payment_id,
                        idempotency_key=f"release_{payment.id}",
                        captured=False,
                    )
                except PaymentFailureError:
                    logger.error("Could not release late authorization %s; needs operator follow-up", payment.id)
            return payment, changed

        changed = await self._claim(
            payment,
            P.PENDING,
            status=P.FAILED.value,
            failure_reason=failure_reason or "authorization failed",
        )
        if changed:
            logger.warning("Payment %s authorization failed: %s", payment.id, payment.failure_reason)
        return payment, changed

    # ------------------------------------------------------------------
    # Capture (exactly once)
    # ------------------------------------------------------------------

    async def _capture_with_retries(self, payment: Payment):
        attempts = max(1, self.settings.payment_capture_max_attempts)
        backoff = self.settings.payment_capture_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                await self.gateway.capture(
                    payment.gateway_payment_id,
                    idempotency_key=f"capture_{payment.id}",
                )
                return
            except PaymentFailureError as e:
                if not e.retryable or attempt == attempts:
                    raise
                delay = backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Capture of payment %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    payment.id, attempt, attempts, delay, e.reason,
                )
                await asyncio.sleep(delay)

    async def release(self, booking: Booking) -> Payment:
        """Capture the held funds for a completed booking. Never captures twice."""
        payment = await self.get_payment(booking.id)
        claimed = await self._claim(
            payment,
            P.AUTHORIZED,
            status=P.COMPLETED.value,
            captured_at=datetime.now(timezone.utc),
        )
        if not claimed:
            raise ConflictError(
                f"Payment is {payment.status}, not authorized; it cannot be released again"
            )

        try:
            await self._capture_with_retries(payment)
        except PaymentFailureError:
            logger.error(
                "Capture failed for payment %s (booking %s); status rolled back to authorized",
                payment.id, booking.id,
            )
            await self._undo(payment, P.COMPLETED, status=P.AUTHORIZED.value, captured_at=None)
            raise

        logger.info("Payment %s released to professional %s", payment.id, booking.professional_id)
        return payment

    # ------------------------------------------------------------------
    # Refunds and hold releases (never retried)
    # ------------------------------------------------------------------

    async def release_hold(
        self,
        booking: Booking,
        reason: str,
        final_status: Optional[PaymentStatus] = None,
    ) -> Optional[Payment]:
        """Give up an uncaptured payment: cancel the hold or the pending authorization.

        Authorized payments end ``refunded`` and pending ones ``failed``, unless
        ``final_status`` (e.g. ``expired``) says otherwise.
        """
        payment = await self.find_payment(booking.id)
        if payment is None:
            return None

        current = P(payment.status)
        if current == P.AUTHORIZED:
            target = final_status or P.REFUNDED
        elif current == P.PENDING:
            target = final_status or P.FAILED
        else:
            return payment

        now = datetime.now(timezone.utc)
        values = {"status": target.value, "failure_reason": reason}
        if current == P.AUTHORIZED:
            values["refunded_at"] = now
        if not await self._claim(payment, current, **values):
            raise ConflictError(f"Payment changed concurrently (now {payment.status})")

        try:
            await self.gateway.refund(
                payment.gateway_payment_id,
                idempotency_key=f"release_{payment.id}",
                captured=False,
            )
        except PaymentFailureError:
            logger.error(
                "Releasing hold for payment %s failed; needs operator follow-up", payment.id
            )
            await self._undo(payment, target, status=current.value, failure_reason=None, refunded_at=None)
            raise

        logger.info("Payment %s %s -> %s (%s)", payment.id, current.value, target.value, reason)
        return payment

    async def refund(
        self,
        booking: Booking,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> Payment:
        """Refund a payment in full or in part.

        An uncaptured authorization can only be released in full. Captured
        payments may be refunded in several parts up to the captured total.
        """
        payment = await self.get_payment(booking.id)
        current = P(payment.status)

        if current == P.AUTHORIZED:
            if amount is not None and _money(amount) != _money(payment.total_with_vat):
                raise ValidationError("amount", "an uncaptured authorization can only be released in full")
            return await self.release_hold(booking, reason)

        if current not in (P.COMPLETED, P.PARTIALLY_REFUNDED):
            raise ConflictError(f"Payment in status {current.value} cannot be refunded")

        total = _money(payment.total_with_vat)
        already = _money(payment.refunded_amount or 0)
        remaining = total - already
        refund_amount = remaining if amount is None else _money(amount)
        if refund_amount <= 0 or refund_amount > remaining:
            raise ValidationError("amount", f"refund must be between 0.01 and {remaining}")

        now = datetime.now(timezone.utc)
        refunded_total = already + refund_amount
        target = P.REFUNDED if refunded_total >= total else P.PARTIALLY_REFUNDED
        previous_refunds = list(payment.refunds or [])
        previous_refunded_at = payment.refunded_at
        entry = {"amount": str(refund_amount), "reason": reason, "refunded_at": now.isoformat()}

        if not await self._claim(
            payment,
            current,
            Payment.refunded_amount == already,
            status=target.value,
            refunded_amount=refunded_total,
            refunded_at=now,
            refunds=previous_refunds + [entry],
        ):
            raise ConflictError(f"Payment changed concurrently (now {payment.status})")

        try:
            await self.gateway.refund(
                payment.gateway_payment_id,
                idempotency_key=f"refund_{payment.id}_{len(previous_refunds) + 1}",
                amount=refund_amount,
                captured=True,
                currency=payment.currency,
            )
        except PaymentFailureError:
            logger.error(
                "Refund of %s on payment %s failed; needs operator follow-up", refund_amount, payment.id
            )
            await self._undo(
                payment,
                target,
                status=current.value,
                refunded_amount=already,
                refunds=previous_refunds,
                refunded_at=previous_refunded_at,
            )
            raise

        logger.info(
            "Refunded %s %s on payment %s (%s)", refund_amount, payment.currency, payment.id, target.value
        )
        return payment
