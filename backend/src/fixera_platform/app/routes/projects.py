"""Project listings, schedule proposals and team availability."""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixera_platform.app.config import Settings, get_settings
from fixera_platform.app.routes.auth import get_current_user_dep, require_role
from fixera_platform.app.routes.common import to_http_exception
from fixera_platform.domain.enums import RENOVATION_CATEGORY, UserRole
from fixera_platform.domain.errors import BookingError, ValidationError
from fixera_platform.domain.models import Project, User
from fixera_platform.domain.schemas import (
    ProjectCreate,
    ProjectResponse,
    ScheduleProposalResponse,
    TeamAvailabilityResponse,
)
from fixera_platform.infra.database import get_db
from fixera_platform.services.booking_serializer import proposal_body, serialize_project
from fixera_platform.services.scheduling_service import SchedulingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


async def _validate_pool(db: AsyncSession, professional: User, data: ProjectCreate) -> list[str]:
    """The pool may hold the professional and their own employees only."""
    pool = list(dict.fromkeys(data.resource_ids))
    if not pool:
        return []
    result = await db.execute(select(User).where(User.id.in_(pool)))
    users = {u.id: u for u in result.scalars().all()}
    for rid in pool:
        member = users.get(rid)
        if member is None:
            raise ValidationError("resource_ids", f"unknown resource {rid}")
        if member.id != professional.id and not (
            member.role == UserRole.EMPLOYEE.value and member.company_id == professional.id
        ):
            raise ValidationError("resource_ids", f"{rid} is not part of your team")
    return pool


def _validate_subprojects(data: ProjectCreate):
    for index, subproject in enumerate(data.subprojects):
        if subproject.intake_duration is not None and data.category != RENOVATION_CATEGORY:
            raise ValidationError(
                f"subprojects[{index}].intake_duration",
                f"intake applies to the {RENOVATION_CATEGORY} category only",
            )


@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    body: ProjectCreate,
    user: User = Depends(require_role(UserRole.PROFESSIONAL.value)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Professional publishes a listing with one or more subprojects."""
    try:
        _validate_subprojects(data=body)
        pool = await _validate_pool(db, user, body)
        min_resources = body.min_resources or settings.default_min_resources
        if min_resources > max(len(pool), 1):
            raise ValidationError(
                "min_resources", f"needs {min_resources} resources but the pool has {max(len(pool), 1)}"
            )
    except BookingError as e:
        raise to_http_exception(e)

    project = Project(
        professional_id=user.id,
        title=body.title,
        category=body.category,
        service=body.service,
        description=body.description,
        time_mode=body.time_mode.value,
        resource_ids=pool,
        min_resources=min_resources,
        min_overlap_percentage=body.min_overlap_percentage or settings.default_min_overlap_percentage,
        preparation_duration=(
            body.preparation_duration.model_dump(mode="json") if body.preparation_duration else None
        ),
        subprojects=[s.model_dump(mode="json") for s in body.subprojects],
        post_booking_questions=[q.model_dump(mode="json") for q in body.post_booking_questions],
    )
    db.add(project)
    await db.commit()
    logger.info("Project %s created by professional %s", project.id, user.id)
    return serialize_project(project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        project = await SchedulingService(db, settings).get_project(project_id)
    except BookingError as e:
        raise to_http_exception(e)
    return serialize_project(project)


@router.get("/{project_id}/schedule-proposals", response_model=ScheduleProposalResponse)
async def get_schedule_proposals(
    project_id: str,
    subproject_index: int = Query(..., alias="subprojectIndex", ge=0),
    viewer_timezone: Optional[str] = Query(None, alias="viewerTimezone"),
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Earliest and shortest-throughput windows, labelled for both parties.

    No availability within the horizon is a normal answer (``available: false``).
    """
    service = SchedulingService(db, settings)
    try:
        project, outcome = await service.get_schedule_proposals(
            project_id, subproject_index, datetime.now(timezone.utc)
        )
        professional_tz = await service.professional_timezone(project)
    except BookingError as e:
        raise to_http_exception(e)

    return ScheduleProposalResponse(
        project_id=project.id,
        subproject_index=subproject_index,
        **proposal_body(outcome, project.time_mode, professional_tz, viewer_timezone or user.timezone),
    )


@router.get("/{project_id}/availability", response_model=TeamAvailabilityResponse)
async def get_team_availability(
    project_id: str,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Times the team cannot field ``min_resources`` people, for calendar display."""
    try:
        return await SchedulingService(db, settings).team_availability(project_id)
    except BookingError as e:
        raise to_http_exception(e)
