"""Loads calendars from the database and runs the proposal engine.

Booking-derived blocks are computed here on every read from the bookings that
currently occupy a resource; they are never stored on the resource.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixera_platform.app.config import Settings, get_settings
from fixera_platform.domain.enums import (
    AvailabilityPreference,
    RENOVATION_CATEGORY,
    ResourceKind,
    TimeMode,
    UserRole,
)
from fixera_platform.domain.errors import (
    ConfigurationError,
    NoAvailability,
    NotFoundError,
    ScheduleConflictError,
    ValidationError,
)
from fixera_platform.domain.models import Booking, Project, User
from fixera_platform.domain.schemas import Duration, Subproject
from fixera_platform.services.availability_calendar import (
    STEP,
    ResourceCalendar,
    ResourceGraph,
    ResourceNode,
    booking_block,
    build_calendar,
    civil_day_bounds,
)
from fixera_platform.services.booking_state_machine import BLOCKING_STATES
from fixera_platform.services.intervals import (
    Interval,
    IntervalSet,
    complement,
    coverage_segments,
    subtract_closed,
)
from fixera_platform.services.scheduling_engine import (
    ProposalWindow,
    ScheduleProposal,
    SchedulingProposalEngine,
    SchedulingRequest,
    ceil_minute,
)
from fixera_platform.services.timezone_projector import ensure_utc, normalize_timezone, zone_for

logger = logging.getLogger(__name__)

ZERO = timedelta(0)


def _parse_instant(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def resource_node(user: User) -> ResourceNode:
    """Build a calendar resource from a professional or employee row."""
    if user.role == UserRole.PROFESSIONAL.value:
        kind = ResourceKind.COMPANY
    elif user.role == UserRole.EMPLOYEE.value:
        kind = ResourceKind.EMPLOYEE
    else:
        raise ConfigurationError(f"User {user.id} ({user.role}) cannot be a scheduling resource")

    ranges = []
    for entry in user.blocked_ranges or []:
        start, end = _parse_instant(entry.get("start")), _parse_instant(entry.get("end"))
        if start is None or end is None or end < start:
            logger.warning("Skipping malformed blocked range on user %s: %s", user.id, entry)
            continue
        ranges.append((start, end))

    dates = []
    for entry in user.blocked_dates or []:
        try:
            dates.append(date.fromisoformat(str(entry.get("day"))))
        except ValueError:
            logger.warning("Skipping malformed blocked date on user %s: %s", user.id, entry)

    return ResourceNode(
        id=user.id,
        kind=kind,
        timezone=normalize_timezone(user.timezone),
        parent_id=user.company_id if kind == ResourceKind.EMPLOYEE else None,
        weekly=user.availability or None,
        preference=AvailabilityPreference(user.availability_preference or "personal"),
        blocked_ranges=ranges,
        blocked_dates=dates,
    )


def parse_subproject(project: Project, index: int) -> Subproject:
    subprojects = project.subprojects or []
    if index is None or not 0 <= index < len(subprojects):
        raise ValidationError("subproject_index", f"project has {len(subprojects)} subprojects")
    return Subproject.model_validate(subprojects[index])


class SchedulingService:
    """Database-facing wrapper around ``SchedulingProposalEngine``."""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.engine = SchedulingProposalEngine(horizon_days=self.settings.schedule_horizon_days)

    async def get_project(self, project_id: str) -> Project:
        result = await self.db.execute(select(Project).where(Project.id == project_id))
        project = result.scalar_one_or_none()
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")
        return project

    async def get_user(self, user_id: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    @staticmethod
    def resource_pool(project: Project) -> list[str]:
        return list(project.resource_ids or []) or [project.professional_id]

    async def load_resource_graph(self, resource_ids: list[str]) -> ResourceGraph:
        """Pool members plus the companies their employees belong to."""
        result = await self.db.execute(select(User).where(User.id.in_(resource_ids)))
        users = {u.id: u for u in result.scalars().all()}

        company_ids = {
            u.company_id for u in users.values() if u.company_id and u.company_id not in users
        }
        if company_ids:
            result = await self.db.execute(select(User).where(User.id.in_(company_ids)))
            users.update({u.id: u for u in result.scalars().all()})

        missing = [rid for rid in resource_ids if rid not in users]
        if missing:
            logger.warning("Resource pool references unknown users: %s", missing)
        return {uid: resource_node(u) for uid, u in users.items()}

    async def booking_blocks(
        self,
        resource_ids: list[str],
        exclude_booking_id: Optional[str] = None,
    ) -> dict[str, list[Interval]]:
        """Closed blocks from bookings that currently occupy any of ``resource_ids``."""
        query = select(Booking).where(
            Booking.status.in_([s.value for s in BLOCKING_STATES]),
            Booking.scheduled_start_date.isnot(None),
        )
        if exclude_booking_id:
            query = query.where(Booking.id != exclude_booking_id)
        result = await self.db.execute(query)

        wanted = set(resource_ids)
        blocks: dict[str, list[Interval]] = {rid: [] for rid in resource_ids}
        for booking in result.scalars().all():
            end = booking.scheduled_execution_end or booking.scheduled_end_date
            if end is None:
                continue
            start = booking.scheduled_intake_start or booking.scheduled_start_date
            block = booking_block(start, end)
            for rid in set(booking.assigned_resource_ids or []) & wanted:
                blocks[rid].append(block)
        return blocks

    async def calendars_for(
        self,
        project: Project,
        exclude_booking_id: Optional[str] = None,
    ) -> list[ResourceCalendar]:
        pool = self.resource_pool(project)
        graph = await self.load_resource_graph(pool)
        blocks = await self.booking_blocks(pool, exclude_booking_id)
        return [
            build_calendar(graph[rid], graph, blocks.get(rid))
            for rid in pool
            if rid in graph
        ]

    async def professional_timezone(self, project: Project) -> str:
        professional = await self.get_user(project.professional_id)
        return normalize_timezone(professional.timezone if professional else None)

    def build_request(self, project: Project, subproject: Subproject, tz_name: str) -> SchedulingRequest:
        lead = timedelta(hours=self.settings.min_lead_time_hours)
        if project.preparation_duration:
            lead += Duration.model_validate(project.preparation_duration).to_timedelta()
        intake = ZERO
        if subproject.intake_duration and project.category == RENOVATION_CATEGORY:
            intake = subproject.intake_duration.to_timedelta()
        return SchedulingRequest(
            time_mode=TimeMode(project.time_mode),
            execution=subproject.execution_duration.to_timedelta(),
            buffer=subproject.buffer_duration.to_timedelta() if subproject.buffer_duration else ZERO,
            intake=intake,
            lead_time=lead,
            min_resources=project.min_resources or self.settings.default_min_resources,
            min_overlap_percentage=(
                project.min_overlap_percentage or self.settings.default_min_overlap_percentage
            ),
            timezone=tz_name,
        )

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    async def get_schedule_proposals(
        self,
        project_id: str,
        subproject_index: int,
        now: Optional[datetime] = None,
    ) -> tuple[Project, Union[ScheduleProposal, NoAvailability]]:
        project = await self.get_project(project_id)
        subproject = parse_subproject(project, subproject_index)
        calendars = await self.calendars_for(project)
        request = self.build_request(project, subproject, await self.professional_timezone(project))
        outcome = self.engine.propose(request, calendars, now or datetime.now(timezone.utc))
        if isinstance(outcome, NoAvailability):
            logger.info("No availability for project %s/%s: %s", project_id, subproject_index, outcome.reason)
        return project, outcome

    async def validate_commit(
        self,
        booking: Booking,
        start: datetime,
        now: Optional[datetime] = None,
    ) -> tuple[ProposalWindow, SchedulingRequest]:
        """Re-check ``start`` against current calendars, ignoring ``booking`` itself.

        Raises ``ScheduleConflictError`` carrying a fresh proposal when the window is gone.
        """
        now = now or datetime.now(timezone.utc)
        project = await self.get_project(booking.project_id)
        subproject = parse_subproject(project, booking.subproject_index)
        calendars = await self.calendars_for(project, exclude_booking_id=booking.id)
        request = self.build_request(project, subproject, await self.professional_timezone(project))

        evaluation = self.engine.evaluate(request, calendars, start, now)
        if not evaluation.feasible:
            proposal = self.engine.propose(request, calendars, now)
            logger.info(
                "Commit-time conflict for booking %s at %s: %s", booking.id, start, evaluation.reason
            )
            raise ScheduleConflictError(
                f"Requested start is no longer available: {evaluation.reason}",
                proposal=proposal,
            )
        return evaluation.window, request

    # ------------------------------------------------------------------
    # Team view
    # ------------------------------------------------------------------

    async def team_availability(self, project_id: str, now: Optional[datetime] = None) -> dict:
        """Times within the horizon when the team cannot field ``min_resources`` people.

        Weekly patterns are not included; this is the blocked overlay shown on
        top of them.
        """
        project = await self.get_project(project_id)
        calendars = await self.calendars_for(project)
        minimum = project.min_resources or self.settings.default_min_resources
        if not calendars:
            raise ConfigurationError("project has no schedulable resources")
        if minimum > len(calendars):
            raise ConfigurationError(
                f"min_resources ({minimum}) exceeds the resource pool ({len(calendars)})"
            )

        tz_name = await self.professional_timezone(project)
        start = ceil_minute(ensure_utc(now or datetime.now(timezone.utc)))
        end = start + timedelta(days=self.settings.schedule_horizon_days)
        unblocked = [subtract_closed([(start, end)], cal.blocked, STEP) for cal in calendars]
        available = IntervalSet(coverage_segments(unblocked, minimum))

        blocked_dates = []
        day = start.astimezone(zone_for(tz_name)).date()
        while True:
            day_start, day_end = civil_day_bounds(day, tz_name)
            if day_start >= end:
                break
            if day_start >= start and day_end <= end and available.measure(day_start, day_end) == ZERO:
                blocked_dates.append(day)
            day += timedelta(days=1)

        return {
            "project_id": project.id,
            "timezone": tz_name,
            "min_resources": minimum,
            "blocked_ranges": [
                {"start": s, "end": e, "reason": None}
                for s, e in complement(available.intervals, start, end)
            ],
            "blocked_dates": blocked_dates,
        }
