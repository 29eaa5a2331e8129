"""Own availability profile: weekly pattern, blocked time, preference, timezone."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fixera_platform.app.routes.auth import get_current_user_dep
from fixera_platform.app.routes.common import to_http_exception
from fixera_platform.domain.errors import BookingError
from fixera_platform.domain.models import User
from fixera_platform.domain.schemas import (
    AvailabilityProfileResponse,
    AvailabilityUpdate,
    EffectiveAvailabilityResponse,
)
from fixera_platform.infra.database import get_db
from fixera_platform.services.availability_service import AvailabilityService, profile_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/availability", tags=["availability"])


@router.get("/me", response_model=AvailabilityProfileResponse)
async def get_my_availability(user: User = Depends(get_current_user_dep)):
    return profile_view(user)


@router.put("/me", response_model=AvailabilityProfileResponse)
async def update_my_availability(
    body: AvailabilityUpdate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        await AvailabilityService(db).update_profile(user, body)
        await db.commit()
    except BookingError as e:
        await db.rollback()
        raise to_http_exception(e)
    return profile_view(user)


@router.get("/me/effective", response_model=EffectiveAvailabilityResponse)
async def get_my_effective_availability(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """The pattern that actually applies, after company inheritance and defaults."""
    try:
        return await AvailabilityService(db).effective(user)
    except BookingError as e:
        raise to_http_exception(e)
