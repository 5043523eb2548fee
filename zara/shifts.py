"""
Shift calendar and end-of-shift archiving.

Shifts are defined by wall-clock start/end times. A shift whose end is not
after its start (e.g. NIGHT 19:00 -> 07:00) runs into the next day and
belongs to the date on which it started.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import ZaraError
from .models import ShiftAggregate, ShiftArchive, ShiftInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShiftDefinition:
    type: str
    start: time
    end: time


@dataclass(frozen=True)
class ShiftWindow:
    type: str
    shift_date: date
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60.0

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    def to_info(self) -> ShiftInfo:
        return ShiftInfo(type=self.type, shift_date=self.shift_date, start=self.start, end=self.end)


DEFAULT_SHIFTS = [
    ShiftDefinition("MORNING", time(7, 0), time(19, 0)),
    ShiftDefinition("NIGHT", time(19, 0), time(7, 0)),
]


def _parse_hhmm(value: Any) -> time:
    if isinstance(value, time):
        return value
    hours, minutes = str(value).split(":")
    return time(int(hours), int(minutes))


def parse_shifts(raw: Optional[List[Dict[str, Any]]]) -> List[ShiftDefinition]:
    """Config `shifts:` list -> definitions. Empty/missing means the defaults."""
    if not raw:
        return list(DEFAULT_SHIFTS)
    return [
        ShiftDefinition(str(item["type"]).upper(), _parse_hhmm(item["start"]), _parse_hhmm(item["end"]))
        for item in raw
    ]


class ShiftCalendar:
    def __init__(self, shifts: Optional[List[ShiftDefinition]] = None):
        self.shifts = list(shifts) if shifts else list(DEFAULT_SHIFTS)
        self._validate()

    def _validate(self) -> None:
        # shifts must tile the day: each one ends where the next one starts
        ordered = sorted(self.shifts, key=lambda s: s.start)
        for current, following in zip(ordered, ordered[1:] + ordered[:1]):
            if current.end != following.start:
                raise ValueError(
                    f"Shift {current.type} ends at {current.end:%H:%M} but the next shift "
                    f"({following.type}) starts at {following.start:%H:%M}"
                )

    def _window(self, definition: ShiftDefinition, day: date) -> ShiftWindow:
        start = datetime.combine(day, definition.start)
        end = datetime.combine(day, definition.end)
        if end <= start:
            end += timedelta(days=1)
        return ShiftWindow(definition.type, day, start, end)

    def window_for(self, ts: datetime) -> ShiftWindow:
        for day in (ts.date() - timedelta(days=1), ts.date()):
            for definition in self.shifts:
                window = self._window(definition, day)
                if window.contains(ts):
                    return window
        raise ValueError(f"No shift covers {ts.isoformat()}")

    def split(self, start: datetime, end: datetime) -> Iterator[Tuple[ShiftWindow, datetime, datetime]]:
        """Yield (window, segment_start, segment_end) pieces of [start, end)."""
        cursor = start
        while cursor < end:
            window = self.window_for(cursor)
            segment_end = min(end, window.end)
            yield window, cursor, segment_end
            cursor = segment_end


# ------------------------------------------------------------------ #
# Archiving
# ------------------------------------------------------------------ #

def build_archive(aggregate: ShiftAggregate, machine_name: str, now: datetime) -> ShiftArchive:
    if aggregate.is_archived:
        raise ZaraError(f"Shift aggregate {aggregate.id} is already archived", code="ALREADY_ARCHIVED")

    shift_seconds = (aggregate.end_time - aggregate.start_time).total_seconds()
    efficiency = round(aggregate.running_seconds / shift_seconds * 100, 2) if shift_seconds > 0 else 0.0

    payload = {
        "shiftInfo": {
            "id": aggregate.id,
            "machineId": aggregate.machine_id,
            "machineName": machine_name,
            "operatorId": aggregate.operator_id,
            "shiftType": aggregate.shift_type,
            "shiftDate": aggregate.shift_date.isoformat(),
            "startTime": aggregate.start_time.isoformat(),
            "endTime": aggregate.end_time.isoformat(),
        },
        "productionMetrics": {
            "totalProduction": aggregate.total_production,
            "targetProduction": aggregate.target_production,
            "runningMinutes": round(aggregate.running_seconds / 60.0, 2),
            "efficiency": efficiency,
        },
        "archivedAt": now.isoformat(timespec="seconds"),
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")

    return ShiftArchive(
        shift_aggregate_id=aggregate.id,
        machine_id=aggregate.machine_id,
        operator_id=aggregate.operator_id,
        payload=payload,
        data_size=len(encoded),
        checksum=hashlib.md5(encoded).hexdigest(),
        archived_at=now,
    )


def archive_completed_shifts(
    store,
    now: datetime,
    settled: Optional[Callable[[ShiftAggregate], bool]] = None,
) -> Dict[str, Any]:
    """
    Archive every active aggregate whose shift window has ended. Aggregates
    for which `settled` returns False still have uncommitted accrual and are
    left for a later pass.
    """
    due = [
        a
        for a in store.list_aggregates()
        if a.is_active and not a.is_archived and a.end_time <= now and (settled is None or settled(a))
    ]

    results = []
    for aggregate in due:
        machine = store.get_machine(aggregate.machine_id)
        machine_name = machine.name if machine else str(aggregate.machine_id)
        try:
            archive = store.archive_aggregate(aggregate.id, build_archive(aggregate, machine_name, now))
            results.append({"success": True, "shiftId": aggregate.id, "archiveId": archive.id})
        except ZaraError as e:
            logger.warning("Could not archive shift aggregate %s: %s", aggregate.id, e.message)
            results.append({"success": False, "shiftId": aggregate.id, "error": e.message})

    if due:
        logger.info("Archived %d of %d completed shift aggregates", sum(r["success"] for r in results), len(due))

    return {
        "processed": len(due),
        "archived": sum(1 for r in results if r["success"]),
        "failed": sum(1 for r in results if not r["success"]),
        "results": results,
    }
