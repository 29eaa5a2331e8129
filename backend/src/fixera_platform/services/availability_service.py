"""Availability profiles of professionals and employees."""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixera_platform.domain.enums import AvailabilityPreference, UserRole
from fixera_platform.domain.errors import ForbiddenError, ValidationError
from fixera_platform.domain.models import User
from fixera_platform.domain.schemas import AvailabilityUpdate
from fixera_platform.services.availability_calendar import (
    effective_availability,
    effective_timezone,
    manual_blocked_intervals,
)
from fixera_platform.services.scheduling_service import SchedulingService, resource_node
from fixera_platform.services.timezone_projector import normalize_timezone

logger = logging.getLogger(__name__)

RESOURCE_ROLES = {UserRole.PROFESSIONAL.value, UserRole.EMPLOYEE.value}


def profile_view(user: User) -> dict:
    return {
        "user_id": user.id,
        "timezone": normalize_timezone(user.timezone),
        "availability_preference": user.availability_preference or AvailabilityPreference.PERSONAL.value,
        "availability": user.availability or None,
        "blocked_ranges": list(user.blocked_ranges or []),
        "blocked_dates": list(user.blocked_dates or []),
    }


class AvailabilityService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _company_of(self, user: User) -> Optional[User]:
        if not user.company_id:
            return None
        result = await self.db.execute(select(User).where(User.id == user.company_id))
        return result.scalar_one_or_none()

    async def update_profile(self, user: User, data: AvailabilityUpdate) -> User:
        """Apply a partial update to the caller's own availability profile."""
        if user.role not in RESOURCE_ROLES:
            raise ForbiddenError("Only professionals and employees have an availability profile")

        if data.timezone is not None:
            if normalize_timezone(data.timezone) != data.timezone:
                raise ValidationError("timezone", f"unknown time zone {data.timezone!r}")
            user.timezone = data.timezone

        if data.availability_preference is not None:
            if (
                data.availability_preference == AvailabilityPreference.SAME_AS_COMPANY
                and user.role != UserRole.EMPLOYEE.value
            ):
                raise ValidationError("availability_preference", "only employees can follow the company schedule")
            user.availability_preference = data.availability_preference.value

        # JSON columns are reassigned, never mutated in place
        if data.availability is not None:
            user.availability = data.availability.model_dump(mode="json")
        if data.blocked_ranges is not None:
            user.blocked_ranges = [r.model_dump(mode="json") for r in data.blocked_ranges]
        if data.blocked_dates is not None:
            user.blocked_dates = [d.model_dump(mode="json") for d in data.blocked_dates]

        user.updated_at = datetime.now(timezone.utc)
        await self.db.flush()
        logger.info("Availability profile updated for user %s", user.id)
        return user

    async def effective(self, user: User) -> dict:
        """The weekly pattern and blocked time that actually govern ``user``."""
        if user.role not in RESOURCE_ROLES:
            raise ForbiddenError("Only professionals and employees have an availability profile")

        node = resource_node(user)
        graph = {node.id: node}
        company = await self._company_of(user)
        if company is not None and company.role == UserRole.PROFESSIONAL.value:
            graph[company.id] = resource_node(company)

        pattern, source = effective_availability(node, graph)
        booked = await SchedulingService(self.db).booking_blocks([user.id])
        return {
            "user_id": user.id,
            "timezone": effective_timezone(node, graph),
            "source": source,
            "availability": pattern,
            "blocked_ranges": [
                {"start": start, "end": end, "reason": None}
                for start, end in manual_blocked_intervals(node, graph)
            ],
            # Derived from the user's booked and in-progress jobs; read-only.
            "booking_blocked_ranges": [
                {"start": start, "end": end, "reason": None}
                for start, end in sorted(booked[user.id])
            ],
        }
