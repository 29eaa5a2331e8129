"""Sorted interval algebra over absolute instants.

Free time is represented as half-open ``[start, end)`` intervals. Blocked time
is closed ``[start, end]``: removing a blocked interval frees time again only
one resolution step after its end.

Everything here works on sorted, disjoint lists so that merging and sweeping
stay ``O(n log n)`` instead of scanning minute by minute.
"""

from __future__ import annotations

from bisect import bisect_right
from datetime import datetime, timedelta
from typing import Iterable, Iterator

Interval = tuple[datetime, datetime]

ZERO = timedelta(0)


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort and merge overlapping or touching intervals. Empty intervals are dropped."""
    ordered = sorted((s, e) for s, e in intervals if e > s)
    merged: list[Interval] = []
    for start, end in ordered:
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def merge_closed(intervals: Iterable[Interval]) -> list[Interval]:
    """Merge closed intervals; zero-length (single instant) blocks are kept."""
    ordered = sorted((s, e) for s, e in intervals if e >= s)
    merged: list[Interval] = []
    for start, end in ordered:
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def subtract_closed(
    free: list[Interval],
    blocked: list[Interval],
    step: timedelta,
) -> list[Interval]:
    """Remove closed ``blocked`` intervals from half-open ``free`` intervals.

    Both inputs must be sorted and disjoint (see ``merge_intervals`` /
    ``merge_closed``). A block ``[a, b]`` removes ``[a, b + step)``.
    """
    result: list[Interval] = []
    j = 0
    n_blocked = len(blocked)
    for start, end in free:
        cursor = start
        # Skip blocks that end before this free interval starts.
        while j < n_blocked and blocked[j][1] + step <= cursor:
            j += 1
        k = j
        while k < n_blocked and blocked[k][0] < end:
            b_start, b_end = blocked[k]
            if b_start > cursor:
                result.append((cursor, b_start))
            cursor = max(cursor, b_end + step)
            if cursor >= end:
                break
            k += 1
        if cursor < end:
            result.append((cursor, end))
    return result


def clip(intervals: list[Interval], start: datetime, end: datetime) -> list[Interval]:
    """Restrict sorted intervals to ``[start, end)``."""
    clipped = []
    for s, e in intervals:
        if e <= start:
            continue
        if s >= end:
            break
        clipped.append((max(s, start), min(e, end)))
    return clipped


def coverage_segments(per_resource: list[list[Interval]], minimum: int) -> list[Interval]:
    """Sweep all interval boundaries and return where at least ``minimum`` lists overlap.

    Each inner list must already be merged. At equal instants ends are processed
    before starts, which matches half-open semantics.
    """
    if minimum < 1:
        raise ValueError("minimum must be >= 1")
    events: list[tuple[datetime, int]] = []
    for intervals in per_resource:
        for start, end in intervals:
            events.append((start, 1))
            events.append((end, -1))
    # -1 sorts before +1 at the same instant.
    events.sort()

    segments: list[Interval] = []
    active = 0
    open_at: datetime | None = None
    for instant, delta in events:
        active += delta
        if active >= minimum and open_at is None:
            open_at = instant
        elif active < minimum and open_at is not None:
            if instant > open_at:
                segments.append((open_at, instant))
            open_at = None
    return merge_intervals(segments)


class IntervalSet:
    """Immutable sorted set of disjoint half-open intervals with O(log n) queries."""

    __slots__ = ("_intervals", "_starts", "_prefix")

    def __init__(self, intervals: Iterable[Interval]):
        self._intervals = merge_intervals(intervals)
        self._starts = [s for s, _ in self._intervals]
        prefix = [ZERO]
        for s, e in self._intervals:
            prefix.append(prefix[-1] + (e - s))
        self._prefix = prefix

    def __iter__(self) -> Iterator[Interval]:
        return iter(self._intervals)

    def __len__(self) -> int:
        return len(self._intervals)

    def __bool__(self) -> bool:
        return bool(self._intervals)

    @property
    def intervals(self) -> list[Interval]:
        return list(self._intervals)

    def within(self, start: datetime, end: datetime) -> list[Interval]:
        """Intervals clipped to ``[start, end)``."""
        idx = max(bisect_right(self._starts, start) - 1, 0)
        return clip(self._intervals[idx:], start, end)

    def contains(self, instant: datetime) -> bool:
        idx = bisect_right(self._starts, instant) - 1
        return idx >= 0 and instant < self._intervals[idx][1]

    def _covered_until(self, instant: datetime) -> timedelta:
        """Total covered time strictly before ``instant``."""
        idx = bisect_right(self._starts, instant) - 1
        if idx < 0:
            return ZERO
        start, end = self._intervals[idx]
        return self._prefix[idx] + (min(instant, end) - start)

    def measure(self, start: datetime, end: datetime) -> timedelta:
        """Covered time within ``[start, end)``."""
        if end <= start:
            return ZERO
        return self._covered_until(end) - self._covered_until(start)


def complement(intervals: list[Interval], start: datetime, end: datetime) -> list[Interval]:
    """Gaps of sorted, disjoint ``intervals`` within ``[start, end)``."""
    gaps: list[Interval] = []
    cursor = start
    for s, e in clip(intervals, start, end):
        if s > cursor:
            gaps.append((cursor, s))
        cursor = max(cursor, e)
    if cursor < end:
        gaps.append((cursor, end))
    return gaps
