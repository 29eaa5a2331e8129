"""Shared route dependencies and domain-error translation."""

import logging

from fastapi import Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder

from fixera_platform.app.config import Settings, get_settings
from fixera_platform.domain.enums import TimeMode
from fixera_platform.domain.errors import (
    BookingError,
    ConfigurationError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PaymentFailureError,
    ValidationError,
)
from fixera_platform.infra.notifier import Notifier, build_notifier
from fixera_platform.infra.payment_gateway import PaymentGateway, StripePaymentGateway
from fixera_platform.services.booking_serializer import proposal_body

logger = logging.getLogger(__name__)


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> PaymentGateway:
    return StripePaymentGateway(settings.stripe_secret_key)


def get_notifier(settings: Settings = Depends(get_settings)) -> Notifier:
    return build_notifier(settings)


def to_http_exception(error: BookingError) -> HTTPException:
    """Translate a domain error into the HTTP status callers see."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"field": error.field, "message": error.message},
        )
    if isinstance(error, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "invalid_transition",
                "current_status": error.current_status.value,
                "target_status": error.target_status.value,
                "message": error.reason,
            },
        )
    if isinstance(error, ConflictError):
        detail = {"error": "conflict", "message": error.message}
        if error.proposal is not None:
            mode = getattr(error.proposal, "mode", TimeMode.HOURS)
            detail["proposal"] = proposal_body(error.proposal, mode)
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=jsonable_encoder(detail))
    if isinstance(error, ConfigurationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, PaymentFailureError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"operation": error.operation, "message": error.reason, "retryable": error.retryable},
        )
    logger.error("Unmapped booking error: %s", error)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
