"""Projection of absolute instants into civil time for display.

Instants are stored and compared in UTC. Civil time only appears here, at the
edges: converting a chosen local wall time into an instant, and rendering an
instant for the professional's and the viewer's zones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fixera_platform.domain.enums import TimeMode

logger = logging.getLogger(__name__)

UTC_ZONE = "UTC"


@lru_cache(maxsize=256)
def _load_zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def normalize_timezone(name: Optional[str]) -> str:
    """Return ``name`` if it is a known IANA zone, else "UTC"."""
    if name and _load_zone(name) is not None:
        return name
    if name:
        logger.warning("Unknown timezone %r, falling back to UTC", name)
    return UTC_ZONE


def zone_for(name: Optional[str]) -> ZoneInfo:
    return _load_zone(normalize_timezone(name)) or ZoneInfo(UTC_ZONE)


def ensure_utc(value: datetime) -> datetime:
    """Aware UTC datetime. Naive values (as SQLite returns them) are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_zone(instant: datetime, tz_name: Optional[str]) -> datetime:
    """The same instant expressed in ``tz_name``."""
    return ensure_utc(instant).astimezone(zone_for(tz_name))


def from_civil(civil: datetime, tz_name: Optional[str]) -> datetime:
    """Interpret a naive wall time in ``tz_name`` and return the UTC instant.

    The ``fold`` attribute selects the second occurrence of an ambiguous wall
    time on a DST fall-back day.
    """
    if civil.tzinfo is not None:
        return ensure_utc(civil)
    return civil.replace(tzinfo=zone_for(tz_name)).astimezone(timezone.utc)


def format_instant(instant: datetime, tz_name: Optional[str], include_time: bool = True) -> str:
    """Render like "Mar 5, 2025, 9:00 AM" in ``tz_name``; date only when ``include_time`` is False."""
    local = to_zone(instant, tz_name)
    label = f"{local:%b} {local.day}, {local.year}"
    if include_time:
        hour = local.hour % 12 or 12
        meridiem = "AM" if local.hour < 12 else "PM"
        label += f", {hour}:{local:%M} {meridiem}"
    return label


@dataclass(frozen=True)
class ProjectedLabel:
    professional_zone: str
    viewer_zone: str
    professional_label: str
    viewer_label: str


def project(
    instant: datetime,
    professional_tz: Optional[str],
    viewer_tz: Optional[str],
    mode: TimeMode = TimeMode.HOURS,
) -> ProjectedLabel:
    """Label one instant for both parties. Days-mode bookings render the calendar date only."""
    include_time = mode == TimeMode.HOURS
    professional_zone = normalize_timezone(professional_tz)
    viewer_zone = normalize_timezone(viewer_tz)
    return ProjectedLabel(
        professional_zone=professional_zone,
        viewer_zone=viewer_zone,
        professional_label=format_instant(instant, professional_zone, include_time),
        viewer_label=format_instant(instant, viewer_zone, include_time),
    )


def _format_window(start: datetime, end: datetime, tz_name: str, include_time: bool) -> str:
    first = format_instant(start, tz_name, include_time)
    last = format_instant(end, tz_name, include_time)
    if first == last:
        return first
    return f"{first} → {last}"


def project_window(
    start: datetime,
    end: datetime,
    professional_tz: Optional[str],
    viewer_tz: Optional[str],
    mode: TimeMode = TimeMode.HOURS,
) -> ProjectedLabel:
    """Label a window "start → end" in both zones, collapsed when both ends render the same."""
    include_time = mode == TimeMode.HOURS
    professional_zone = normalize_timezone(professional_tz)
    viewer_zone = normalize_timezone(viewer_tz)
    return ProjectedLabel(
        professional_zone=professional_zone,
        viewer_zone=viewer_zone,
        professional_label=_format_window(start, end, professional_zone, include_time),
        viewer_label=_format_window(start, end, viewer_zone, include_time),
    )
