"""Schedule proposal engine.

Given the effective calendars of a project's resource pool, find the earliest
window in which a fixed set of ``min_resources`` resources is simultaneously
free for at least ``min_overlap_percentage`` percent of the execution span.
The set that passes the check is the set that gets assigned.

The scan never walks time minute by minute. Per-resource free time is built
as sorted intervals and each candidate window is measured with prefix sums.
For any fixed set of resources, the covered share of a window can only
shrink as its start moves later inside a jointly-free stretch, so the only
candidate starts are instants where some resource becomes free (and the
earliest bookable instant). At each candidate the resources free at that
instant are ranked by their own free time over the window, the top
``min_resources`` are taken, and the sweep measures when exactly those are
free together.

Hours mode works on minutes and wall-clock spans. Days mode works on civil
days of the professional's zone: a day is usable when the chosen resources'
jointly-free share of their working time meets the overlap threshold, and
execution consumes that many usable days with the same resources.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Sequence, Union

from fixera_platform.domain.enums import TimeMode
from fixera_platform.domain.errors import ConfigurationError, NoAvailability, ValidationError
from fixera_platform.services.availability_calendar import ResourceCalendar, civil_day_bounds
from fixera_platform.services.intervals import IntervalSet, coverage_segments
from fixera_platform.services.timezone_projector import ensure_utc, normalize_timezone, zone_for

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 180
ONE_DAY = timedelta(days=1)
ZERO = timedelta(0)

Chosen = tuple[int, ...]


@dataclass(frozen=True)
class SchedulingRequest:
    """Scheduling parameters of one subproject."""

    time_mode: TimeMode
    execution: timedelta
    buffer: timedelta = ZERO
    intake: timedelta = ZERO
    lead_time: timedelta = ZERO
    min_resources: int = 1
    min_overlap_percentage: float = 90.0
    timezone: str = "UTC"

    @property
    def execution_days(self) -> int:
        return max(1, math.ceil(self.execution / ONE_DAY))

    @property
    def buffer_days(self) -> int:
        return math.ceil(self.buffer / ONE_DAY) if self.buffer > ZERO else 0


@dataclass(frozen=True)
class ProposalWindow:
    start: datetime
    end: datetime
    execution_end: datetime
    resource_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScheduleProposal:
    mode: TimeMode
    earliest_bookable_date: datetime
    earliest_proposal: ProposalWindow
    shortest_throughput_proposal: Optional[ProposalWindow] = None


@dataclass(frozen=True)
class WindowEvaluation:
    """Outcome of checking one concrete start against the current calendars."""

    feasible: bool
    overlap: float
    window: Optional[ProposalWindow] = None
    reason: Optional[str] = None


def ceil_minute(instant: datetime) -> datetime:
    floored = instant.replace(second=0, microsecond=0)
    return floored if floored == instant else floored + timedelta(minutes=1)


def rank_resources(
    free_sets: Sequence[IntervalSet],
    candidates: Sequence[int],
    start: datetime,
    end: datetime,
    minimum: int,
) -> Optional[Chosen]:
    """The ``minimum`` candidates with the most free time in ``[start, end)``, ties by pool order."""
    if len(candidates) < minimum:
        return None
    ranked = sorted(candidates, key=lambda i: (-free_sets[i].measure(start, end), i))
    return tuple(ranked[:minimum])


def free_together(
    free_sets: Sequence[IntervalSet], chosen: Chosen, start: datetime, end: datetime
) -> IntervalSet:
    """Time in ``[start, end)`` during which every chosen resource is free."""
    return IntervalSet(coverage_segments([free_sets[i].within(start, end) for i in chosen], len(chosen)))


def _usable(share: Optional[float], percentage: float) -> bool:
    # Compare in percent with a small tolerance for float division.
    return share is not None and share * 100 + 1e-9 >= percentage


class _DayPlanner:
    """Usable civil days for fixed resource sets, over a run of consecutive days."""

    def __init__(
        self,
        request: SchedulingRequest,
        calendars: Sequence[ResourceCalendar],
        first_day: date,
        day_count: int,
        tz_name: str,
    ):
        self.request = request
        self.bounds = [
            civil_day_bounds(first_day + timedelta(days=offset), tz_name) for offset in range(day_count)
        ]
        range_start, range_end = self.bounds[0][0], self.bounds[-1][1]
        self.free_sets = [IntervalSet(cal.free_intervals(range_start, range_end)) for cal in calendars]
        self.working_sets = [IntervalSet(cal.working_windows(range_start, range_end)) for cal in calendars]
        self._shares: dict[Chosen, list[Optional[float]]] = {}

    def pick(self, start_offset: int) -> Optional[Chosen]:
        """Resources with the most free time over the nominal span starting that day."""
        last = min(start_offset + self.request.execution_days, len(self.bounds)) - 1
        start, end = self.bounds[start_offset][0], self.bounds[last][1]
        present = [i for i, fs in enumerate(self.free_sets) if fs.measure(start, end) > ZERO]
        return rank_resources(self.free_sets, present, start, end, self.request.min_resources)

    def shares(self, chosen: Chosen) -> list[Optional[float]]:
        """Jointly-free share of the chosen resources' working time for each day.

        ``None`` marks a day on which none of them works.
        """
        key = tuple(sorted(chosen))
        cached = self._shares.get(key)
        if cached is None:
            joint = IntervalSet(coverage_segments([self.free_sets[i].intervals for i in key], len(key)))
            working = IntervalSet(window for i in key for window in self.working_sets[i])
            cached = []
            for day_start, day_end in self.bounds:
                total = working.measure(day_start, day_end)
                cached.append(joint.measure(day_start, day_end) / total if total > ZERO else None)
            self._shares[key] = cached
        return cached

    def plan(self, start_offset: int) -> Optional[tuple[Chosen, list[int]]]:
        """Resources and the usable days they consume when execution starts that day."""
        chosen = self.pick(start_offset)
        if chosen is None:
            return None
        shares = self.shares(chosen)
        percentage = self.request.min_overlap_percentage
        if not _usable(shares[start_offset], percentage):
            return None
        consumed: list[int] = []
        for offset in range(start_offset, len(shares)):
            if _usable(shares[offset], percentage):
                consumed.append(offset)
                if len(consumed) == self.request.execution_days:
                    return chosen, consumed
        return None


class SchedulingProposalEngine:
    """Pure proposal engine; callers supply calendars and the current instant."""

    def __init__(self, horizon_days: int = DEFAULT_HORIZON_DAYS):
        self.horizon_days = horizon_days

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def propose(
        self,
        request: SchedulingRequest,
        calendars: Sequence[ResourceCalendar],
        now: datetime,
    ) -> Union[ScheduleProposal, NoAvailability]:
        """Earliest feasible window, plus the shortest-throughput one in days mode."""
        self._check_configuration(request, calendars)
        if request.time_mode == TimeMode.HOURS:
            return self._propose_hours(request, calendars, ensure_utc(now))
        return self._propose_days(request, calendars, ensure_utc(now))

    def evaluate(
        self,
        request: SchedulingRequest,
        calendars: Sequence[ResourceCalendar],
        start: datetime,
        now: datetime,
    ) -> WindowEvaluation:
        """Check whether ``start`` is still bookable, as done again at commit time."""
        self._check_configuration(request, calendars)
        start = ensure_utc(start)
        now = ensure_utc(now)
        if request.time_mode == TimeMode.HOURS:
            return self._evaluate_hours(request, calendars, start, now)
        return self._evaluate_days(request, calendars, start, now)

    def earliest_bookable(self, request: SchedulingRequest, now: datetime) -> datetime:
        """``now + lead time`` rounded up to the minute (hours) or civil midnight (days)."""
        ready = ensure_utc(now) + request.lead_time
        if request.time_mode == TimeMode.HOURS:
            return ceil_minute(ready)
        return civil_day_bounds(self._first_day(request, now), self._zone_name(request))[0]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_configuration(self, request: SchedulingRequest, calendars: Sequence[ResourceCalendar]):
        if request.execution <= ZERO:
            raise ValidationError("execution_duration", "must be positive")
        if not calendars:
            raise ConfigurationError("project has no schedulable resources")
        if request.min_resources < 1:
            raise ConfigurationError("min_resources must be at least 1")
        if request.min_resources > len(calendars):
            raise ConfigurationError(
                f"min_resources ({request.min_resources}) exceeds the resource pool ({len(calendars)})"
            )
        if not 0 < request.min_overlap_percentage <= 100:
            raise ConfigurationError("min_overlap_percentage must be in (0, 100]")

    @staticmethod
    def _zone_name(request: SchedulingRequest) -> str:
        return normalize_timezone(request.timezone)

    @staticmethod
    def _meets_threshold(covered: timedelta, total: timedelta, percentage: float) -> bool:
        return total > ZERO and covered * 100 >= total * percentage

    @staticmethod
    def _resource_ids(calendars: Sequence[ResourceCalendar], chosen: Chosen) -> tuple[str, ...]:
        return tuple(calendars[i].resource_id for i in chosen)

    # ------------------------------------------------------------------
    # Hours mode
    # ------------------------------------------------------------------

    @staticmethod
    def _fit_hours(
        request: SchedulingRequest, free_sets: list[IntervalSet], start: datetime
    ) -> tuple[Optional[Chosen], timedelta]:
        """Resources free at ``start`` picked for the window, and how long they are free together."""
        end = start + request.execution
        free_now = [i for i, fs in enumerate(free_sets) if fs.contains(start)]
        chosen = rank_resources(free_sets, free_now, start, end, request.min_resources)
        if chosen is None:
            return None, ZERO
        return chosen, free_together(free_sets, chosen, start, end).measure(start, end)

    def _propose_hours(
        self,
        request: SchedulingRequest,
        calendars: Sequence[ResourceCalendar],
        now: datetime,
    ) -> Union[ScheduleProposal, NoAvailability]:
        earliest = self.earliest_bookable(request, now)
        last_start = earliest + timedelta(days=self.horizon_days)
        free_sets = [IntervalSet(cal.free_intervals(earliest, last_start + request.execution)) for cal in calendars]
        candidates = sorted(
            {earliest}.union(s for fs in free_sets for s, _ in fs if earliest < s <= last_start)
        )

        for start in candidates:
            chosen, covered = self._fit_hours(request, free_sets, start)
            if chosen is None or not self._meets_threshold(
                covered, request.execution, request.min_overlap_percentage
            ):
                continue
            end = start + request.execution
            window = ProposalWindow(
                start=start,
                end=end,
                execution_end=end + request.buffer,
                resource_ids=self._resource_ids(calendars, chosen),
            )
            logger.debug("Hours-mode proposal at %s with %s", start, window.resource_ids)
            return ScheduleProposal(
                mode=TimeMode.HOURS,
                earliest_bookable_date=earliest,
                earliest_proposal=window,
            )

        return NoAvailability(
            reason="no window with enough jointly free resources within the horizon",
            horizon_days=self.horizon_days,
        )

    def _evaluate_hours(
        self,
        request: SchedulingRequest,
        calendars: Sequence[ResourceCalendar],
        start: datetime,
        now: datetime,
    ) -> WindowEvaluation:
        earliest = self.earliest_bookable(request, now)
        if start < earliest:
            return WindowEvaluation(False, 0.0, reason="start is before the earliest bookable time")
        if start > earliest + timedelta(days=self.horizon_days):
            return WindowEvaluation(False, 0.0, reason="start is beyond the scheduling horizon")

        end = start + request.execution
        free_sets = [IntervalSet(cal.free_intervals(start, end)) for cal in calendars]
        chosen, covered = self._fit_hours(request, free_sets, start)
        if chosen is None:
            return WindowEvaluation(False, 0.0, reason="resources are not free at the start")
        overlap = covered / request.execution
        if not self._meets_threshold(covered, request.execution, request.min_overlap_percentage):
            return WindowEvaluation(False, overlap, reason="overlap below the required percentage")
        window = ProposalWindow(
            start=start,
            end=end,
            execution_end=end + request.buffer,
            resource_ids=self._resource_ids(calendars, chosen),
        )
        return WindowEvaluation(True, overlap, window=window)

    # ------------------------------------------------------------------
    # Days mode
    # ------------------------------------------------------------------

    def _first_day(self, request: SchedulingRequest, now: datetime) -> date:
        ready = (ensure_utc(now) + request.lead_time).astimezone(zone_for(self._zone_name(request)))
        if ready.time() == time(0, 0):
            return ready.date()
        return ready.date() + ONE_DAY

    def _days_window(
        self,
        request: SchedulingRequest,
        calendars: Sequence[ResourceCalendar],
        chosen: Chosen,
        first_day: date,
        start_offset: int,
        last_offset: int,
    ) -> ProposalWindow:
        tz_name = self._zone_name(request)
        return ProposalWindow(
            start=civil_day_bounds(first_day + timedelta(days=start_offset), tz_name)[0],
            end=civil_day_bounds(first_day + timedelta(days=last_offset), tz_name)[1],
            execution_end=civil_day_bounds(
                first_day + timedelta(days=last_offset + request.buffer_days), tz_name
            )[1],
            resource_ids=self._resource_ids(calendars, chosen),
        )

    def _propose_days(
        self,
        request: SchedulingRequest,
        calendars: Sequence[ResourceCalendar],
        now: datetime,
    ) -> Union[ScheduleProposal, NoAvailability]:
        first_day = self._first_day(request, now)
        needed = request.execution_days
        # Execution may skip unusable days, so look past the last start day.
        day_count = 2 * self.horizon_days + needed
        planner = _DayPlanner(request, calendars, first_day, day_count, self._zone_name(request))

        earliest: Optional[tuple[Chosen, int, int]] = None
        shortest: Optional[tuple[Chosen, int, int]] = None
        for start_offset in range(min(self.horizon_days, day_count)):
            plan = planner.plan(start_offset)
            if plan is None:
                continue
            chosen, consumed = plan
            candidate = (chosen, start_offset, consumed[-1])
            if earliest is None:
                earliest = candidate
            if shortest is None or consumed[-1] - start_offset < shortest[2] - shortest[1]:
                shortest = candidate
            if consumed[-1] - start_offset == needed - 1:
                break

        if earliest is None:
            return NoAvailability(
                reason=f"fewer than {needed} usable days within the horizon",
                horizon_days=self.horizon_days,
            )

        return ScheduleProposal(
            mode=TimeMode.DAYS,
            earliest_bookable_date=civil_day_bounds(first_day, self._zone_name(request))[0],
            earliest_proposal=self._days_window(request, calendars, earliest[0], first_day, *earliest[1:]),
            shortest_throughput_proposal=self._days_window(
                request, calendars, shortest[0], first_day, *shortest[1:]
            ),
        )

    def _evaluate_days(
        self,
        request: SchedulingRequest,
        calendars: Sequence[ResourceCalendar],
        start: datetime,
        now: datetime,
    ) -> WindowEvaluation:
        tz_name = self._zone_name(request)
        start_day = start.astimezone(zone_for(tz_name)).date()
        first_day = self._first_day(request, now)
        if start_day < first_day:
            return WindowEvaluation(False, 0.0, reason="start is before the earliest bookable date")
        if (start_day - first_day).days >= self.horizon_days:
            return WindowEvaluation(False, 0.0, reason="start is beyond the scheduling horizon")

        planner = _DayPlanner(request, calendars, start_day, self.horizon_days + request.execution_days, tz_name)
        chosen = planner.pick(0)
        if chosen is None:
            return WindowEvaluation(False, 0.0, reason="resources are not free on the start day")
        shares = planner.shares(chosen)
        if not _usable(shares[0], request.min_overlap_percentage):
            return WindowEvaluation(
                False, shares[0] or 0.0, reason="resources are not free on the start day"
            )

        plan = planner.plan(0)
        if plan is None:
            return WindowEvaluation(False, 0.0, reason="not enough usable days after the start")
        chosen, consumed = plan
        overlap = min(shares[offset] for offset in consumed)
        window = self._days_window(request, calendars, chosen, start_day, 0, consumed[-1])
        return WindowEvaluation(True, overlap, window=window)
