"""Payment gateway adapters.

Escrow uses manual-capture PaymentIntents: ``authorize`` places a hold,
``capture`` releases funds to the platform once work is confirmed, and
``refund`` either cancels an uncaptured hold or refunds a captured charge.

The stripe SDK is synchronous, so each call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional, Protocol

import stripe

from fixera_platform.domain.errors import PaymentFailureError

logger = logging.getLogger(__name__)

# Currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "ISK", "HUF"}


@dataclass(frozen=True)
class GatewayAuthorization:
    """Result of placing an authorization hold."""

    gateway_payment_id: str
    client_secret: Optional[str] = None
    status: str = "requires_confirmation"


class PaymentGateway(Protocol):
    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> GatewayAuthorization: ...

    async def capture(self, gateway_payment_id: str, idempotency_key: str) -> None: ...

    async def refund(
        self,
        gateway_payment_id: str,
        idempotency_key: str,
        amount: Optional[Decimal] = None,
        captured: bool = True,
        currency: str = "EUR",
    ) -> None: ...


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to the gateway's integer minor units."""
    exponent = Decimal("1") if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")
    quantized = Decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)
    return int(quantized / exponent)


class StripePaymentGateway:
    """Stripe implementation of ``PaymentGateway``."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    def _check_configured(self, operation: str):
        if not self.api_key:
            raise PaymentFailureError(operation, "payment gateway is not configured")

    async def _call(self, operation: str, fn, *args, **kwargs) -> Any:
        self._check_configured(operation)
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.CardError as e:
            logger.warning("Stripe %s declined: %s", operation, e.user_message or e)
            raise PaymentFailureError(operation, e.user_message or "card declined") from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error("Stripe %s unavailable: %s", operation, e)
            raise PaymentFailureError(operation, "gateway unavailable", retryable=True) from e
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", operation, e)
            raise PaymentFailureError(operation, str(e) or "gateway error") from e

    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> GatewayAuthorization:
        intent = await self._call(
            "authorize",
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount, currency),
            currency=currency.lower(),
            capture_method="manual",
            automatic_payment_methods={"enabled": True},
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        logger.info("Stripe authorization %s created (%s %s)", intent.id, amount, currency)
        return GatewayAuthorization(
            gateway_payment_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    async def capture(self, gateway_payment_id: str, idempotency_key: str) -> None:
        await self._call(
            "capture",
            stripe.PaymentIntent.capture,
            gateway_payment_id,
            idempotency_key=idempotency_key,
        )
        logger.info("Stripe payment %s captured", gateway_payment_id)

    async def refund(
        self,
        gateway_payment_id: str,
        idempotency_key: str,
        amount: Optional[Decimal] = None,
        captured: bool = True,
        currency: str = "EUR",
    ) -> None:
        if not captured:
            # Uncaptured intents are released by cancelling the authorization.
            await self._call(
                "refund",
                stripe.PaymentIntent.cancel,
                gateway_payment_id,
                idempotency_key=idempotency_key,
            )
            logger.info("Stripe authorization %s released", gateway_payment_id)
            return

        params: dict[str, Any] = {"payment_intent": gateway_payment_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount, currency)
        await self._call(
            "refund",
            stripe.Refund.create,
            idempotency_key=idempotency_key,
            **params,
        )
        logger.info("Stripe refund issued for %s (amount=%s)", gateway_payment_id, amount or "full")
