"""Effective availability of schedulable resources.

Pure functions over an explicit resource graph: no database access, no clock.
A resource is a company (the professional) or an employee pointing at its
company. Weekly patterns are civil times in the resource's IANA zone; every
comparison happens in absolute UTC time.
"""

from __future__ import annotations

import logging
import re
from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from fixera_platform.domain.enums import AvailabilityPreference, ResourceKind
from fixera_platform.services.intervals import (
    Interval,
    clip,
    merge_closed,
    merge_intervals,
    subtract_closed,
)
from fixera_platform.services.timezone_projector import ensure_utc, zone_for

logger = logging.getLogger(__name__)

STEP = timedelta(minutes=1)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

DEFAULT_START = "09:00"
DEFAULT_END = "17:00"

DEFAULT_WEEKLY_AVAILABILITY: dict[str, dict[str, Any]] = {
    day: {
        "available": day not in ("saturday", "sunday"),
        "start_time": DEFAULT_START,
        "end_time": DEFAULT_END,
    }
    for day in WEEKDAYS
}

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_time_to_minutes(value: Optional[str]) -> Optional[int]:
    """Parse "HH:MM" into minutes after midnight. "24:00" is end of day (1440)."""
    if not value:
        return None
    match = _TIME_RE.match(value.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours == 24 and minutes == 0:
        return 24 * 60
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


# ---------------------------------------------------------------------------
# Resource graph
# ---------------------------------------------------------------------------


@dataclass
class ResourceNode:
    """One schedulable resource as loaded from a user row."""

    id: str
    kind: ResourceKind
    timezone: str = "UTC"
    parent_id: Optional[str] = None
    weekly: Optional[dict[str, Any]] = None
    preference: AvailabilityPreference = AvailabilityPreference.PERSONAL
    blocked_ranges: list[Interval] = field(default_factory=list)
    blocked_dates: list[date] = field(default_factory=list)


ResourceGraph = dict[str, ResourceNode]


def _parent(resource: ResourceNode, graph: ResourceGraph) -> Optional[ResourceNode]:
    if resource.kind != ResourceKind.EMPLOYEE or not resource.parent_id:
        return None
    return graph.get(resource.parent_id)


def effective_availability(resource: ResourceNode, graph: ResourceGraph) -> tuple[dict[str, Any], str]:
    """Resolve the weekly pattern that governs ``resource``.

    Returns ``(pattern, source)`` where source is "personal", "company" or
    "default". Employees with ``same_as_company`` follow their company's
    pattern; a company without a configured pattern uses the default week.
    """
    if (
        resource.kind == ResourceKind.EMPLOYEE
        and resource.preference == AvailabilityPreference.SAME_AS_COMPANY
    ):
        company = _parent(resource, graph)
        if company is not None and company.weekly:
            return company.weekly, "company"
        return DEFAULT_WEEKLY_AVAILABILITY, "default"
    if resource.weekly:
        return resource.weekly, "personal"
    return DEFAULT_WEEKLY_AVAILABILITY, "default"


def effective_timezone(resource: ResourceNode, graph: ResourceGraph) -> str:
    if resource.timezone:
        return resource.timezone
    company = _parent(resource, graph)
    return company.timezone if company is not None else "UTC"


def day_window_minutes(weekly: dict[str, Any], weekday: str) -> Optional[tuple[int, int]]:
    """Working window of one weekday as ``(start_minute, end_minute)`` or None."""
    entry = weekly.get(weekday)
    if not entry or not entry.get("available"):
        return None
    start = parse_time_to_minutes(entry.get("start_time") or DEFAULT_START)
    end = parse_time_to_minutes(entry.get("end_time") or DEFAULT_END)
    if start is None or end is None or end <= start:
        return None
    return start, end


def working_window_utc(civil_day: date, tz_name: str, weekly: dict[str, Any]) -> Optional[Interval]:
    """Working window of ``civil_day`` in ``tz_name``, as UTC instants.

    Offsets come from the zone's rules on that very date, so a window on a DST
    transition day is shorter or longer in absolute time.
    """
    window = day_window_minutes(weekly, WEEKDAYS[civil_day.weekday()])
    if window is None:
        return None
    zone = zone_for(tz_name)
    midnight = datetime.combine(civil_day, time(0, 0))
    start_local = midnight + timedelta(minutes=window[0])
    end_local = midnight + timedelta(minutes=window[1])
    start = start_local.replace(tzinfo=zone).astimezone(timezone.utc)
    end = end_local.replace(tzinfo=zone).astimezone(timezone.utc)
    if end <= start:
        return None
    return start, end


def civil_day_bounds(civil_day: date, tz_name: str) -> Interval:
    """``[00:00, next 00:00)`` of a civil day in ``tz_name``, as UTC instants."""
    zone = zone_for(tz_name)
    start = datetime.combine(civil_day, time(0, 0), tzinfo=zone).astimezone(timezone.utc)
    end = datetime.combine(civil_day + timedelta(days=1), time(0, 0), tzinfo=zone).astimezone(
        timezone.utc
    )
    return start, end


def _floor_minute(instant: datetime) -> datetime:
    return instant.replace(second=0, microsecond=0)


def _ceil_minute(instant: datetime) -> datetime:
    floored = _floor_minute(instant)
    return floored if floored == instant else floored + STEP


def manual_blocked_intervals(resource: ResourceNode, graph: ResourceGraph) -> list[Interval]:
    """Closed blocked intervals entered by hand: own ranges and dates plus the company's."""
    owners = [resource]
    company = _parent(resource, graph)
    if company is not None:
        owners.append(company)

    blocks: list[Interval] = []
    for owner in owners:
        tz_name = owner.timezone or "UTC"
        for start, end in owner.blocked_ranges:
            blocks.append((_floor_minute(ensure_utc(start)), _ceil_minute(ensure_utc(end))))
        for blocked_day in owner.blocked_dates:
            day_start, day_end = civil_day_bounds(blocked_day, tz_name)
            blocks.append((day_start, day_end - STEP))
    return merge_closed(blocks)


def booking_block(
    scheduled_start: datetime,
    scheduled_end: datetime,
    intake: timedelta = timedelta(0),
    buffer: timedelta = timedelta(0),
) -> Interval:
    """Closed interval a booked resource is unavailable.

    The booking occupies ``[start - intake, end + buffer)``; as a closed block
    that ends one step before ``end + buffer``.
    """
    return ensure_utc(scheduled_start) - intake, ensure_utc(scheduled_end) + buffer - STEP


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


@dataclass
class ResourceCalendar:
    """Everything needed to answer availability questions for one resource."""

    resource_id: str
    timezone: str
    weekly: dict[str, Any]
    blocked: list[Interval]

    def __post_init__(self):
        self.blocked = merge_closed(self.blocked)
        self._blocked_starts = [s for s, _ in self.blocked]

    def is_blocked(self, instant: datetime) -> bool:
        idx = bisect_right(self._blocked_starts, instant) - 1
        return idx >= 0 and instant <= self.blocked[idx][1]

    def working_windows(self, start: datetime, end: datetime) -> list[Interval]:
        """Working windows overlapping ``[start, end)``, clipped to it."""
        zone = zone_for(self.timezone)
        first = start.astimezone(zone).date() - timedelta(days=1)
        last = end.astimezone(zone).date() + timedelta(days=1)
        windows = []
        day = first
        while day <= last:
            window = working_window_utc(day, self.timezone, self.weekly)
            if window is not None:
                windows.append(window)
            day += timedelta(days=1)
        return clip(merge_intervals(windows), start, end)

    def free_intervals(self, start: datetime, end: datetime) -> list[Interval]:
        """Working time in ``[start, end)`` that no blocked interval touches."""
        return subtract_closed(self.working_windows(start, end), self.blocked, STEP)


def build_calendar(
    resource: ResourceNode,
    graph: ResourceGraph,
    booking_blocks: Optional[list[Interval]] = None,
) -> ResourceCalendar:
    """Assemble the effective calendar of one resource.

    ``booking_blocks`` are closed intervals derived from other bookings this
    resource is assigned to; they are computed on read, never stored.
    """
    weekly, _ = effective_availability(resource, graph)
    blocked = manual_blocked_intervals(resource, graph)
    for start, end in booking_blocks or []:
        blocked.append((_floor_minute(ensure_utc(start)), _ceil_minute(ensure_utc(end))))
    return ResourceCalendar(
        resource_id=resource.id,
        timezone=effective_timezone(resource, graph),
        weekly=weekly,
        blocked=blocked,
    )


def is_available(calendar: ResourceCalendar, instant: datetime) -> bool:
    """True iff ``instant`` falls inside a working window and outside every block."""
    instant = ensure_utc(instant)
    if calendar.is_blocked(instant):
        return False
    zone = zone_for(calendar.timezone)
    window = working_window_utc(instant.astimezone(zone).date(), calendar.timezone, calendar.weekly)
    return window is not None and window[0] <= instant < window[1]
