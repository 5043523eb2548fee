"""
Accrual intervals.

An accrual interval is a contiguous span during which a single production
speed applied. Production is always the sum of `seconds / 60 * speed` over
closed intervals; it is never recomputed from the operation start with the
speed in effect now.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .shifts import ShiftCalendar, ShiftWindow


@dataclass(frozen=True)
class AccrualInterval:
    speed: float  # units/minute
    start: datetime
    end: datetime
    operator_id: Optional[int] = None

    @property
    def seconds(self) -> float:
        # clock skew: a negative span accrues nothing
        return max(0.0, (self.end - self.start).total_seconds())

    @property
    def units(self) -> float:
        return units_for(self.seconds, self.speed)


@dataclass
class ShiftIncrement:
    window: ShiftWindow
    units: float = 0.0
    running_seconds: float = 0.0


def units_for(seconds: float, speed: float) -> float:
    return max(0.0, seconds) / 60.0 * max(0.0, speed)


def increments_by_shift(intervals: Iterable[AccrualInterval], calendar: ShiftCalendar) -> List[ShiftIncrement]:
    """Sum intervals per shift window, splitting any interval that crosses a boundary."""
    buckets: Dict[Tuple[date, str], ShiftIncrement] = {}
    for interval in intervals:
        if interval.seconds <= 0:
            continue
        for window, seg_start, seg_end in calendar.split(interval.start, interval.end):
            seconds = (seg_end - seg_start).total_seconds()
            inc = buckets.setdefault((window.shift_date, window.type), ShiftIncrement(window))
            inc.units += units_for(seconds, interval.speed)
            inc.running_seconds += seconds
    return list(buckets.values())


def group_by_operator(intervals: Iterable[AccrualInterval]) -> Dict[Optional[int], List[AccrualInterval]]:
    groups: Dict[Optional[int], List[AccrualInterval]] = {}
    for interval in intervals:
        groups.setdefault(interval.operator_id, []).append(interval)
    return groups
