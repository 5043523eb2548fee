from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta
from typing import List, Optional

import numpy as np
import pandas as pd

from .errors import InvalidPeriod
from .models import Machine, PeriodProduction, ProductionAggregate, StatusChange, StatusShare

DOWNTIME_STATUSES = ("STOPPED", "ERROR")


def initial_status(changes: List[StatusChange], start: datetime, current: str) -> str:
    """Status in effect at `start`: last change before it, else what the first later change replaced."""
    before = [c for c in changes if c.created_at <= start]
    if before:
        return before[-1].new_status
    after = [c for c in changes if c.created_at > start and c.previous_status]
    if after:
        return after[0].previous_status
    return current


def status_segments(changes: List[StatusChange], start: datetime, end: datetime, first_status: str) -> pd.DataFrame:
    """One row per contiguous status span inside [start, end]."""
    points = [(start, first_status)] + [
        (c.created_at, c.new_status) for c in changes if start < c.created_at < end
    ]
    df = pd.DataFrame(points, columns=["at", "status"])
    df["at"] = pd.to_datetime(df["at"])
    df["until"] = df["at"].shift(-1).fillna(pd.Timestamp(end))
    df["minutes"] = (df["until"] - df["at"]).dt.total_seconds() / 60.0
    return df


def status_breakdown(changes: List[StatusChange], start: datetime, end: datetime, first_status: str) -> List[StatusShare]:
    if end <= start:
        return []
    df = status_segments(changes, start, end, first_status)
    per_status = df.groupby("status")["minutes"].sum().sort_values(ascending=False)
    total = per_status.sum()
    return [
        StatusShare(
            status=status,
            minutes=int(round(minutes)),
            percentage=int(round(minutes / total * 100)) if total > 0 else 0,
        )
        for status, minutes in per_status.items()
    ]


def period_production(
    store,
    machine: Machine,
    start: datetime,
    end: datetime,
    now: Optional[datetime] = None,
) -> PeriodProduction:
    if start >= end:
        raise InvalidPeriod("startTime must be before endTime")

    # nothing has run in the future
    effective_end = min(end, now) if now else end
    changes = store.list_status_changes(machine.id)
    shares = status_breakdown(changes, start, effective_end, initial_status(changes, start, machine.status))
    minutes = {s.status: s.minutes for s in shares}

    total_minutes = max(0, int((effective_end - start).total_seconds() // 60))
    running_minutes = minutes.get("RUNNING", 0)
    estimated = sum(
        a.total_production
        for a in store.list_aggregates(machine_id=machine.id)
        if a.start_time < end and a.end_time > start
    )

    return PeriodProduction(
        machine_id=machine.id,
        start_time=start,
        end_time=end,
        production_speed=machine.production_speed,
        total_minutes=total_minutes,
        running_minutes=running_minutes,
        stopped_minutes=sum(minutes.get(s, 0) for s in DOWNTIME_STATUSES),
        maintenance_minutes=minutes.get("MAINTENANCE", 0),
        estimated_production=math.floor(estimated),
        efficiency=min(100, round(running_minutes / total_minutes * 100)) if total_minutes > 0 else 0,
        status_breakdown=shares,
    )


def daily_production(store, machine: Machine, day: date, now: Optional[datetime] = None) -> PeriodProduction:
    start = datetime.combine(day, time.min)
    return period_production(store, machine, start, start + timedelta(days=1), now)


def production_aggregate(store, estimator, now: datetime) -> ProductionAggregate:
    """Dashboard totals over active machines for the current shift."""
    rows = []
    for machine in store.list_machines():
        if not machine.is_active:
            continue
        cs = estimator.current_shift(machine.id, now)
        elapsed = (min(now, cs.shift.end) - cs.shift.start).total_seconds() / 60.0
        rows.append(
            {
                "machine_id": machine.id,
                "production": cs.estimated_production,
                "running_minutes": cs.running_minutes,
                "efficiency": cs.efficiency,
                "running": machine.status == "RUNNING",
                "downtime": max(0.0, elapsed - cs.running_minutes) if cs.last_update else 0.0,
            }
        )

    if not rows:
        return ProductionAggregate(last_updated=now)

    df = pd.DataFrame(rows)
    efficiencies = df.loc[df["efficiency"] > 0, "efficiency"].to_numpy()
    return ProductionAggregate(
        total_production=int(df["production"].sum()),
        total_running_time=int(df["running_minutes"].sum()),
        average_efficiency=int(round(float(np.mean(efficiencies)))) if efficiencies.size else 0,
        total_downtime=int(df["downtime"].sum()),
        running_machines=int(df["running"].sum()),
        total_machines=len(df),
        last_updated=now,
    )
